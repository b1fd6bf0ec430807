"""
Tests for invoice issue/void transitions and annual revenue bookkeeping
"""
from datetime import datetime
from decimal import Decimal

import pytest

import ledger
from models import db, Invoice, InvoiceItem, InvoiceStatus, AnnualStat, AuditLog, NumberRange
from invoice_numbers import current_period, period_year

TODAY = datetime.utcnow().date()
PERIOD = current_period(TODAY)
YEAR = period_year(PERIOD)
PREFIX = PERIOD[2:]


def invoice_payload(grand_total='1050.00', **overrides):
    # 5% business tax included in the grand total
    pre_tax = (Decimal(grand_total) / Decimal('1.05')).quantize(Decimal('0.01'))
    data = {
        'year_month': PERIOD,
        'buyer_name': '測試客戶股份有限公司',
        'buyer_tax_id': '12345678',
        'grand_total': grand_total,
        'pre_tax_total': str(pre_tax),
        'tax_total': str(Decimal(grand_total) - pre_tax),
    }
    data.update(overrides)
    return data


def stat_for(user):
    return AnnualStat.query.filter_by(user_id=user.id, year=YEAR).first()


class TestCreateInvoice:

    def test_create_issues_and_books_revenue(self, operator_user):
        invoice = ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY)

        assert invoice.status == InvoiceStatus.ISSUED
        assert invoice.invoice_number == f'{PREFIX}10000001'
        assert invoice.issued_at is not None
        assert invoice.grand_total == Decimal('1050.00')

        stat = stat_for(operator_user)
        assert stat.total_revenue == Decimal('1050.00')
        assert stat.total_invoices == 1

        audit = AuditLog.query.filter_by(action='CREATE_INVOICE').one()
        assert audit.resource_id == str(invoice.id)
        assert audit.user_id == operator_user.id

    def test_numbers_are_sequential(self, operator_user):
        first = ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY)
        second = ledger.create_invoice(invoice_payload('210.00'), [], operator_user, today=TODAY)

        assert first.invoice_number == f'{PREFIX}10000001'
        assert second.invoice_number == f'{PREFIX}10000002'
        assert stat_for(operator_user).total_revenue == Decimal('1260.00')
        assert stat_for(operator_user).total_invoices == 2

    def test_totals_summed_from_items(self, operator_user):
        items = [
            {'description': '海報設計', 'pre_tax_amount': '1000', 'tax_amount': '50'},
            {'description': '印刷', 'pre_tax_amount': '200', 'tax_amount': '10', 'category': '印刷'},
        ]
        data = {'year_month': PERIOD, 'buyer_name': '個人消費者'}

        invoice = ledger.create_invoice(data, items, operator_user, today=TODAY)

        assert invoice.pre_tax_total == Decimal('1200.00')
        assert invoice.tax_total == Decimal('60.00')
        assert invoice.grand_total == Decimal('1260.00')
        assert [item.description for item in invoice.items] == ['海報設計', '印刷']
        assert invoice.items[0].total_amount == Decimal('1050.00')
        assert invoice.items[1].category == '印刷'

    def test_adopts_pending_workspace_items(self, operator_user):
        db.session.add(InvoiceItem(session_id='ws-1', user_id=operator_user.id, description='名片', category='其他',
                                   pre_tax_amount=Decimal('100'), tax_amount=Decimal('5'),
                                   total_amount=Decimal('105')))
        db.session.commit()

        invoice = ledger.create_invoice(invoice_payload('105.00', session_id='ws-1'), [],
                                        operator_user, today=TODAY)

        assert len(invoice.items) == 1
        assert invoice.items[0].invoice_id == invoice.id

    def test_other_users_workspace_not_adopted(self, operator_user, admin_user):
        db.session.add(InvoiceItem(session_id='ws-1', user_id=admin_user.id, description='名片', category='其他',
                                   pre_tax_amount=Decimal('100'), tax_amount=Decimal('5'),
                                   total_amount=Decimal('105')))
        db.session.commit()

        with pytest.raises(ValueError, match='請提供發票金額或品項'):
            ledger.create_invoice({'year_month': PERIOD, 'buyer_name': '客戶', 'session_id': 'ws-1'}, [],
                                  operator_user, today=TODAY)

        invoice = ledger.create_invoice(invoice_payload('105.00', session_id='ws-1'), [],
                                        operator_user, today=TODAY)
        assert invoice.items == []
        assert InvoiceItem.query.filter_by(user_id=admin_user.id).one().invoice_id is None

    def test_inconsistent_totals_rejected(self, operator_user):
        data = invoice_payload(pre_tax_total='100.00', tax_total='5.00')

        with pytest.raises(ValueError, match='金額不一致'):
            ledger.create_invoice(data, [], operator_user, today=TODAY)

        assert Invoice.query.count() == 0

    def test_buyer_name_required(self, operator_user):
        with pytest.raises(ValueError, match='請輸入買受人名稱'):
            ledger.create_invoice(invoice_payload(buyer_name='  '), [], operator_user, today=TODAY)

    def test_invalid_buyer_tax_id(self, operator_user):
        with pytest.raises(ValueError, match='統一編號'):
            ledger.create_invoice(invoice_payload(buyer_tax_id='1234'), [], operator_user, today=TODAY)

    def test_failure_after_allocation_rolls_everything_back(self, operator_user):
        """A bad line item fails after the number was taken; nothing is kept"""
        items = [{'description': '', 'pre_tax_amount': '100', 'tax_amount': '5'}]

        with pytest.raises(ValueError):
            ledger.create_invoice(invoice_payload('105.00'), items, operator_user, today=TODAY)

        assert Invoice.query.count() == 0
        assert AnnualStat.query.count() == 0
        assert AuditLog.query.filter_by(action='CREATE_INVOICE').count() == 0

        # the slot was not consumed
        invoice = ledger.create_invoice(invoice_payload('105.00'), [], operator_user, today=TODAY)
        assert invoice.invoice_number == f'{PREFIX}10000001'

    def test_exhausted_range_books_nothing(self, operator_user):
        number_range = NumberRange(year_month=PERIOD, prefix=PREFIX, start_number=10000001,
                                   end_number=10000500, current_number=10000501, active=True)
        db.session.add(number_range)
        db.session.commit()

        with pytest.raises(ValueError, match='發票號碼已用完'):
            ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY)

        assert Invoice.query.count() == 0
        assert stat_for(operator_user) is None


class TestDrafts:

    def test_draft_has_no_number_and_no_revenue(self, operator_user):
        draft = ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY, as_draft=True)

        assert draft.status == InvoiceStatus.DRAFT
        assert draft.invoice_number is None
        assert stat_for(operator_user) is None
        assert AuditLog.query.filter_by(action='CREATE_DRAFT').count() == 1

    def test_update_draft(self, operator_user):
        draft = ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY, as_draft=True)

        updated = ledger.update_invoice(draft.id, {'buyer_name': '新買受人', 'notes': '改抬頭'}, operator_user)

        assert updated.buyer_name == '新買受人'
        assert updated.notes == '改抬頭'
        audit = AuditLog.query.filter_by(action='UPDATE_INVOICE').one()
        assert audit.details['buyer_name'] == '新買受人'

    def test_update_unknown_field_rejected(self, operator_user):
        draft = ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY, as_draft=True)

        with pytest.raises(ValueError, match='不允許修改的欄位'):
            ledger.update_invoice(draft.id, {'invoice_number': 'XX'}, operator_user)

    def test_issued_invoice_cannot_be_edited(self, operator_user):
        invoice = ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY)

        with pytest.raises(ValueError, match='只能修改草稿狀態的發票'):
            ledger.update_invoice(invoice.id, {'buyer_name': '改名'}, operator_user)

    def test_issue_draft(self, operator_user):
        draft = ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY, as_draft=True)

        invoice = ledger.issue_invoice(draft.id, operator_user, today=TODAY)

        assert invoice.status == InvoiceStatus.ISSUED
        assert invoice.invoice_number == f'{PREFIX}10000001'
        assert stat_for(operator_user).total_revenue == Decimal('1050.00')

    def test_issue_twice_rejected(self, operator_user):
        draft = ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY, as_draft=True)
        ledger.issue_invoice(draft.id, operator_user, today=TODAY)

        with pytest.raises(ValueError, match='只能開立草稿狀態的發票'):
            ledger.issue_invoice(draft.id, operator_user, today=TODAY)

        assert stat_for(operator_user).total_invoices == 1


class TestVoidInvoice:

    def test_void_reverses_revenue_exactly(self, operator_user):
        kept = ledger.create_invoice(invoice_payload('210.00'), [], operator_user, today=TODAY)
        invoice = ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY)

        voided = ledger.void_invoice(invoice.id, '買受人資料錯誤', operator_user)

        assert voided.status == InvoiceStatus.VOIDED
        assert voided.void_reason == '買受人資料錯誤'
        assert voided.voided_by == operator_user.id
        assert voided.voided_at is not None
        # number stays with the voided invoice
        assert voided.invoice_number == f'{PREFIX}10000002'

        stat = stat_for(operator_user)
        assert stat.total_revenue == kept.grand_total
        assert stat.total_invoices == 1

        audit = AuditLog.query.filter_by(action='VOID_INVOICE').one()
        assert audit.details['reason'] == '買受人資料錯誤'
        assert audit.details['original_amount'] == '1050.00'

    def test_void_twice_rejected(self, operator_user):
        invoice = ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY)
        ledger.void_invoice(invoice.id, '重複開立', operator_user)

        with pytest.raises(ValueError, match='發票已作廢'):
            ledger.void_invoice(invoice.id, '再次作廢', operator_user)

        stat = stat_for(operator_user)
        assert stat.total_revenue == Decimal('0.00')
        assert stat.total_invoices == 0

    def test_void_requires_reason(self, operator_user):
        invoice = ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY)

        with pytest.raises(ValueError, match='請輸入作廢原因'):
            ledger.void_invoice(invoice.id, '   ', operator_user)

        assert db.session.get(Invoice, invoice.id).status == InvoiceStatus.ISSUED

    def test_void_missing_invoice(self, operator_user):
        with pytest.raises(ValueError, match='發票不存在'):
            ledger.void_invoice(12345, '不存在', operator_user)

    def test_void_draft_leaves_stats_alone(self, operator_user):
        draft = ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY, as_draft=True)

        ledger.void_invoice(draft.id, '不需要了', operator_user)

        assert db.session.get(Invoice, draft.id).status == InvoiceStatus.VOIDED
        assert stat_for(operator_user) is None

    def test_admin_void_adjusts_owner_stat(self, operator_user, admin_user):
        invoice = ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY)

        ledger.void_invoice(invoice.id, '主管作廢', admin_user)

        assert stat_for(operator_user).total_revenue == Decimal('0.00')
        assert stat_for(admin_user) is None


class TestAnnualStats:

    def test_counts_issued_invoices_only(self, operator_user):
        ledger.create_invoice(invoice_payload('1050.00'), [], operator_user, today=TODAY)
        ledger.create_invoice(invoice_payload('2100.00'), [], operator_user, today=TODAY)
        voided = ledger.create_invoice(invoice_payload('525.00'), [], operator_user, today=TODAY)
        ledger.void_invoice(voided.id, '作廢', operator_user)
        ledger.create_invoice(invoice_payload('999.00'), [], operator_user, today=TODAY, as_draft=True)

        stats = ledger.annual_stats(TODAY.year, operator_user.id)

        assert stats['total_revenue'] == 3150.0
        assert stats['total_invoices'] == 2
        assert stats['is_near_limit'] is False
        assert stats['warning_threshold'] == 4800000.0

    def test_other_years_and_users_excluded(self, operator_user, admin_user):
        ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY)
        ledger.create_invoice(invoice_payload('210.00'), [], admin_user, today=TODAY)

        assert ledger.annual_stats(TODAY.year - 1, operator_user.id)['total_invoices'] == 0
        assert ledger.annual_stats(TODAY.year, operator_user.id)['total_revenue'] == 1050.0
        assert ledger.annual_stats(TODAY.year)['total_revenue'] == 1260.0

    def test_near_limit_above_ninety_percent(self, operator_user):
        ledger.create_invoice(invoice_payload('4320000.00'), [], operator_user, today=TODAY)
        assert ledger.annual_stats(TODAY.year, operator_user.id)['is_near_limit'] is False

        ledger.create_invoice(invoice_payload('0.01'), [], operator_user, today=TODAY)
        assert ledger.annual_stats(TODAY.year, operator_user.id)['is_near_limit'] is True

    def test_empty_year(self, operator_user):
        stats = ledger.annual_stats(TODAY.year, operator_user.id)

        assert stats['total_revenue'] == 0.0
        assert stats['total_invoices'] == 0
        assert stats['is_near_limit'] is False


class TestReconcile:

    def test_drift_is_corrected(self, operator_user, admin_user):
        ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY)
        stat = stat_for(operator_user)
        stat.total_revenue = Decimal('99999.00')
        stat.total_invoices = 7
        db.session.commit()

        result = ledger.reconcile_annual_stats(YEAR, operator_user.id, admin_user)

        assert result['actual_revenue'] == 1050.0
        assert result['actual_invoices'] == 1
        assert result['invoice_drift'] == 6
        stat = stat_for(operator_user)
        assert stat.total_revenue == Decimal('1050.00')
        assert stat.total_invoices == 1
        assert AuditLog.query.filter_by(action='RECONCILE_STATS').count() == 1

    def test_consistent_stat_has_no_drift(self, operator_user, admin_user):
        invoice = ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY)
        ledger.create_invoice(invoice_payload('210.00'), [], operator_user, today=TODAY)
        ledger.void_invoice(invoice.id, '作廢', operator_user)

        result = ledger.reconcile_annual_stats(YEAR, operator_user.id, admin_user)

        assert result['revenue_drift'] == 0
        assert result['invoice_drift'] == 0


class TestBatchUpload:

    def test_uploads_pending_issued_invoices(self, operator_user, admin_user, no_upload_delay):
        ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY)
        ledger.create_invoice(invoice_payload('210.00'), [], operator_user, today=TODAY)
        voided = ledger.create_invoice(invoice_payload('105.00'), [], operator_user, today=TODAY)
        ledger.void_invoice(voided.id, '作廢', operator_user)

        result = ledger.batch_upload_invoices(PERIOD, admin_user, today=TODAY)

        assert result['success'] == 2
        assert result['failed'] == 0
        assert result['past_cutoff'] is False
        assert Invoice.query.filter(Invoice.uploaded_at.isnot(None)).count() == 2

        # already uploaded invoices are skipped
        again = ledger.batch_upload_invoices(PERIOD, admin_user, today=TODAY)
        assert again['success'] == 0

    def test_failures_are_counted(self, operator_user, admin_user, no_upload_delay, monkeypatch):
        first = ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY)
        ledger.create_invoice(invoice_payload('210.00'), [], operator_user, today=TODAY)
        failing_number = first.invoice_number

        real_upload = ledger.upload_to_tax_authority

        def flaky_upload(invoice):
            if invoice.invoice_number == failing_number:
                raise ConnectionError('平台無回應')
            real_upload(invoice)

        monkeypatch.setattr(ledger, 'upload_to_tax_authority', flaky_upload)

        result = ledger.batch_upload_invoices(PERIOD, admin_user, today=TODAY)

        assert result['success'] == 1
        assert result['failed'] == 1
        audit = AuditLog.query.filter_by(action='BATCH_UPLOAD').one()
        assert audit.details == {'year_month': PERIOD, 'success': 1, 'failed': 1}

    def test_past_cutoff_is_flagged(self, admin_user, no_upload_delay):
        result = ledger.batch_upload_invoices('20240102', admin_user)

        assert result['cutoff_date'] == '2024-03-15'
        assert result['past_cutoff'] is True


class TestExportAccountingData:

    def test_rows_in_number_order(self, operator_user):
        ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY)
        ledger.create_invoice(invoice_payload('210.00', buyer_tax_id=None), [], operator_user, today=TODAY)
        ledger.create_invoice(invoice_payload(), [], operator_user, today=TODAY, as_draft=True)

        rows = ledger.export_accounting_data(PERIOD)

        assert [row['invoice_number'] for row in rows] == [f'{PREFIX}10000001', f'{PREFIX}10000002']
        assert rows[0]['grand_total'] == '1050.00'
        assert rows[0]['pre_tax_total'] == '1000.00'
        assert rows[0]['tax_total'] == '50.00'
        assert rows[1]['buyer_tax_id'] == ''
