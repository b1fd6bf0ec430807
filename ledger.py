"""
Invoice ledger: issue/void state transitions and per-user annual revenue

Every state-changing operation runs as a single transaction on db.session: the
invoice row, the AnnualStat adjustment and the audit entry are committed together
or rolled back together.
"""
import time
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import func

from models import db, Invoice, InvoiceItem, InvoiceStatus, AnnualStat
from invoice_numbers import (
    get_available_invoice_number,
    parse_period,
    period_year,
    upload_cutoff_date,
)
from utils import parse_amount, sanitize_input, validate_tax_id, record_audit, log_success

# Configure logging
logger = logging.getLogger(__name__)

REVENUE_CEILING = Decimal('4800000')
NEAR_LIMIT_RATIO = Decimal('0.9')
UPLOAD_SIMULATED_DELAY = 0.1  # seconds

EDITABLE_FIELDS = (
    'year_month', 'buyer_name', 'buyer_tax_id', 'notes',
    'pre_tax_total', 'tax_total', 'grand_total',
)


def _money(value: Decimal) -> str:
    return f"{Decimal(value):.2f}"


def apply_annual_stat(user_id: int, year: int, amount: Decimal, count_delta: int) -> AnnualStat:
    """Add amount/count_delta to the user's running total for the year, creating the row if absent"""
    stat = db.session.query(AnnualStat).filter_by(
        user_id=user_id,
        year=year
    ).with_for_update().first()

    if stat:
        stat.total_revenue = Decimal(stat.total_revenue) + Decimal(amount)
        stat.total_invoices = stat.total_invoices + count_delta
        stat.updated_at = datetime.utcnow()
    else:
        stat = AnnualStat(
            user_id=user_id,
            year=year,
            total_revenue=Decimal(amount),
            total_invoices=max(count_delta, 0),
        )
        db.session.add(stat)

    return stat


def _normalize_totals(data: Dict[str, Any], items: List[Dict[str, Any]]) -> Dict[str, Decimal]:
    """
    Totals from the payload, or summed from the line items when omitted

    Raises:
        ValueError: totals missing, negative or inconsistent
    """
    if data.get('grand_total') is None:
        if not items:
            raise ValueError('請提供發票金額或品項')
        pre_tax = sum((parse_amount(i.get('pre_tax_amount'), '未稅金額') for i in items), Decimal('0.00'))
        tax = sum((parse_amount(i.get('tax_amount'), '稅額') for i in items), Decimal('0.00'))
        return {'pre_tax_total': pre_tax, 'tax_total': tax, 'grand_total': pre_tax + tax}

    grand_total = parse_amount(data.get('grand_total'), '總計')
    pre_tax = parse_amount(data.get('pre_tax_total', grand_total), '未稅金額')
    tax = parse_amount(data.get('tax_total', 0), '稅額')

    if pre_tax + tax != grand_total:
        raise ValueError(f'金額不一致：未稅金額 {pre_tax} + 稅額 {tax} ≠ 總計 {grand_total}')

    return {'pre_tax_total': pre_tax, 'tax_total': tax, 'grand_total': grand_total}


def _build_invoice(invoice_data: Dict[str, Any], items: List[Dict[str, Any]], user) -> Invoice:
    year_month = str(invoice_data.get('year_month') or '')
    parse_period(year_month)

    buyer_name = sanitize_input(invoice_data.get('buyer_name'), max_length=200)
    if not buyer_name:
        raise ValueError('請輸入買受人名稱')

    tax_id_result = validate_tax_id(invoice_data.get('buyer_tax_id'))
    if not tax_id_result['valid']:
        raise ValueError(tax_id_result['message'])

    totals = _normalize_totals(invoice_data, items)

    return Invoice(
        year_month=year_month,
        buyer_name=buyer_name,
        buyer_tax_id=tax_id_result['formatted'] or None,
        notes=sanitize_input(invoice_data.get('notes'), max_length=2000) or None,
        user_id=user.id,
        status=InvoiceStatus.DRAFT,
        **totals
    )


def _pending_items(session_id: Optional[str], user_id: int) -> List[InvoiceItem]:
    if not session_id:
        return []
    return InvoiceItem.query.filter_by(session_id=session_id, user_id=user_id, invoice_id=None).all()


def _workspace_amounts(session_id: Optional[str], user_id: int) -> List[Dict[str, Any]]:
    """Amounts of the pending items a new invoice will adopt"""
    pending = _pending_items(session_id, user_id)
    return [{'pre_tax_amount': item.pre_tax_amount, 'tax_amount': item.tax_amount} for item in pending]


def _attach_items(invoice: Invoice, items: List[Dict[str, Any]], session_id: Optional[str] = None):
    """Insert the given line items and adopt the owner's pending items of the draft workspace"""
    for item in _pending_items(session_id, invoice.user_id):
        item.invoice_id = invoice.id

    for item in items:
        description = sanitize_input(item.get('description'), max_length=500)
        if not description:
            raise ValueError('品項說明不可為空白')

        pre_tax = parse_amount(item.get('pre_tax_amount'), '未稅金額')
        tax = parse_amount(item.get('tax_amount', 0), '稅額')
        total = parse_amount(item.get('total_amount', pre_tax + tax), '品項金額')

        db.session.add(InvoiceItem(
            invoice_id=invoice.id,
            session_id=f"invoice_{invoice.id}",
            user_id=invoice.user_id,
            description=description,
            category=sanitize_input(item.get('category'), max_length=50) or '其他',
            pre_tax_amount=pre_tax,
            tax_amount=tax,
            total_amount=total,
        ))


def _issue(invoice: Invoice, today: Optional[date]):
    """draft -> issued: gate the period, allocate a number and book the revenue"""
    invoice_number, number_range = get_available_invoice_number(invoice.year_month, today)

    invoice.invoice_number = invoice_number
    invoice.number_range_id = number_range.id
    invoice.status = InvoiceStatus.ISSUED
    invoice.issued_at = datetime.utcnow()

    apply_annual_stat(invoice.user_id, period_year(invoice.year_month), invoice.grand_total, 1)


def create_invoice(invoice_data: Dict[str, Any], items: List[Dict[str, Any]], user,
                   today: Optional[date] = None, as_draft: bool = False) -> Invoice:
    """
    Create an invoice, issued immediately unless saved as a draft

    Issuing allocates a number for the requested period, books +grand_total on the
    user's AnnualStat and writes a CREATE_INVOICE audit entry, all in one commit.

    Raises:
        ValueError: invalid payload, period not open, range exhausted
    """
    items = items or []
    try:
        invoice = _build_invoice(invoice_data, items + _workspace_amounts(invoice_data.get('session_id'), user.id), user)

        if not as_draft:
            _issue(invoice, today)

        db.session.add(invoice)
        db.session.flush()

        _attach_items(invoice, items, session_id=invoice_data.get('session_id'))

        record_audit(
            user.id,
            'CREATE_DRAFT' if as_draft else 'CREATE_INVOICE',
            'invoice',
            invoice.id,
            {'invoice_number': invoice.invoice_number, 'grand_total': _money(invoice.grand_total)}
        )

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_success(
        'invoice_draft_saved' if as_draft else 'invoice_created',
        f"Invoice {invoice.invoice_number or invoice.id} ({invoice.status.value}) for {invoice.buyer_name}",
        {'invoice_id': invoice.id, 'grand_total': _money(invoice.grand_total)}
    )
    return invoice


def issue_invoice(invoice_id: int, user, today: Optional[date] = None) -> Invoice:
    """
    Issue a draft invoice

    Raises:
        ValueError: invoice missing or not a draft, period not open, range exhausted
    """
    try:
        invoice = db.session.query(Invoice).filter_by(id=invoice_id).with_for_update().first()

        if not invoice:
            raise ValueError('發票不存在')

        if invoice.status != InvoiceStatus.DRAFT:
            raise ValueError('只能開立草稿狀態的發票')

        _issue(invoice, today)

        record_audit(
            user.id,
            'ISSUE_INVOICE',
            'invoice',
            invoice.id,
            {'invoice_number': invoice.invoice_number, 'grand_total': _money(invoice.grand_total)}
        )

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_success('invoice_issued', f"Draft {invoice.id} issued as {invoice.invoice_number}",
                {'invoice_id': invoice.id})
    return invoice


def update_invoice(invoice_id: int, changes: Dict[str, Any], user) -> Invoice:
    """
    Edit a draft invoice

    Raises:
        ValueError: invoice missing, not a draft, or unknown/invalid fields
    """
    unknown = [field for field in changes if field not in EDITABLE_FIELDS]
    if unknown:
        raise ValueError(f'不允許修改的欄位：{", ".join(unknown)}')

    try:
        invoice = db.session.query(Invoice).filter_by(id=invoice_id).with_for_update().first()

        if not invoice:
            raise ValueError('發票不存在')

        if invoice.status != InvoiceStatus.DRAFT:
            raise ValueError('只能修改草稿狀態的發票')

        merged = {field: getattr(invoice, field) for field in EDITABLE_FIELDS}
        merged.update(changes)
        rebuilt = _build_invoice(merged, [], user)

        audit_details = {}
        for field in EDITABLE_FIELDS:
            new_value = getattr(rebuilt, field)
            if getattr(invoice, field) != new_value:
                setattr(invoice, field, new_value)
                audit_details[field] = str(new_value) if new_value is not None else None

        invoice.updated_at = datetime.utcnow()

        record_audit(user.id, 'UPDATE_INVOICE', 'invoice', invoice.id, audit_details)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    return invoice


def void_invoice(invoice_id: int, reason: str, user) -> Invoice:
    """
    Void an invoice; voided is terminal

    An issued invoice takes its grand total back off its owner's AnnualStat. A
    draft was never booked, so voiding it only changes its status.

    Raises:
        ValueError: invoice missing, already voided, or no reason given
    """
    reason = sanitize_input(reason, max_length=1000)
    if not reason:
        raise ValueError('請輸入作廢原因')

    try:
        invoice = db.session.query(Invoice).filter_by(id=invoice_id).with_for_update().first()

        if not invoice:
            raise ValueError('發票不存在')

        if invoice.status == InvoiceStatus.VOIDED:
            raise ValueError('發票已作廢')

        was_issued = invoice.status == InvoiceStatus.ISSUED

        invoice.status = InvoiceStatus.VOIDED
        invoice.voided_at = datetime.utcnow()
        invoice.void_reason = reason
        invoice.voided_by = user.id
        invoice.updated_at = datetime.utcnow()

        if was_issued:
            apply_annual_stat(invoice.user_id, period_year(invoice.year_month), -Decimal(invoice.grand_total), -1)

        record_audit(
            user.id,
            'VOID_INVOICE',
            'invoice',
            invoice.id,
            {
                'reason': reason,
                'invoice_number': invoice.invoice_number,
                'original_amount': _money(invoice.grand_total),
            }
        )

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_success('invoice_voided', f"Invoice {invoice.invoice_number or invoice.id} voided: {reason}",
                {'invoice_id': invoice.id, 'original_amount': _money(invoice.grand_total)})
    return invoice


def annual_stats(year: int, user_id: Optional[int] = None) -> Dict[str, Any]:
    """
    Revenue and invoice count for a year, read from issued invoice rows

    The AnnualStat running totals are not consulted here.
    """
    query = db.session.query(
        func.coalesce(func.sum(Invoice.grand_total), 0),
        func.count(Invoice.id)
    ).filter(
        Invoice.status == InvoiceStatus.ISSUED,
        Invoice.issued_at >= datetime(year, 1, 1),
        Invoice.issued_at < datetime(year + 1, 1, 1),
    )

    if user_id is not None:
        query = query.filter(Invoice.user_id == user_id)

    total, count = query.one()
    total_revenue = Decimal(str(total)).quantize(Decimal('0.01'))

    return {
        'year': year,
        'user_id': user_id,
        'total_revenue': float(total_revenue),
        'total_invoices': int(count),
        'is_near_limit': total_revenue > REVENUE_CEILING * NEAR_LIMIT_RATIO,
        'warning_threshold': float(REVENUE_CEILING),
    }


def reconcile_annual_stats(year: int, user_id: int, actor) -> Dict[str, Any]:
    """
    Recompute a user's AnnualStat for a year from the invoice table and overwrite it

    Returns the cached and recomputed figures so drift can be reported.
    """
    try:
        total, count = db.session.query(
            func.coalesce(func.sum(Invoice.grand_total), 0),
            func.count(Invoice.id)
        ).filter(
            Invoice.user_id == user_id,
            Invoice.status == InvoiceStatus.ISSUED,
            Invoice.year_month.like(f"{year:04d}%"),
        ).one()
        actual_revenue = Decimal(str(total)).quantize(Decimal('0.01'))

        stat = db.session.query(AnnualStat).filter_by(user_id=user_id, year=year).with_for_update().first()
        if not stat:
            stat = AnnualStat(user_id=user_id, year=year, total_revenue=Decimal('0'), total_invoices=0)
            db.session.add(stat)

        cached_revenue = Decimal(stat.total_revenue or 0).quantize(Decimal('0.01'))
        cached_count = stat.total_invoices or 0

        stat.total_revenue = actual_revenue
        stat.total_invoices = int(count)
        stat.updated_at = datetime.utcnow()

        result = {
            'year': year,
            'user_id': user_id,
            'cached_revenue': float(cached_revenue),
            'cached_invoices': cached_count,
            'actual_revenue': float(actual_revenue),
            'actual_invoices': int(count),
            'revenue_drift': float(cached_revenue - actual_revenue),
            'invoice_drift': cached_count - int(count),
        }

        record_audit(actor.id, 'RECONCILE_STATS', 'annual_stats', stat.id, result)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    if result['revenue_drift'] or result['invoice_drift']:
        logger.warning(f"AnnualStat drift corrected for user {user_id}/{year}: "
                       f"revenue {result['revenue_drift']}, invoices {result['invoice_drift']}")
    return result


def upload_to_tax_authority(invoice: Invoice):
    """Stand-in for the tax authority e-invoice API"""
    if not invoice.invoice_number:
        raise ValueError(f'發票 {invoice.id} 尚未配號，無法上傳')

    time.sleep(UPLOAD_SIMULATED_DELAY)
    logger.info(f"Uploading invoice {invoice.invoice_number} to tax authority")


def batch_upload_invoices(year_month: str, user, today: Optional[date] = None) -> Dict[str, Any]:
    """
    Upload every issued, not yet uploaded invoice of a period

    Each invoice is committed on its own; a failed upload is counted and logged
    and the batch carries on.
    """
    parse_period(year_month)
    today = today or date.today()

    cutoff = upload_cutoff_date(year_month)
    past_cutoff = today > cutoff
    if past_cutoff:
        logger.warning(f"Batch upload for {year_month} after cutoff date {cutoff.isoformat()}")

    pending = Invoice.query.filter(
        Invoice.year_month == year_month,
        Invoice.status == InvoiceStatus.ISSUED,
        Invoice.uploaded_at.is_(None)
    ).order_by(Invoice.invoice_number).all()

    success_count = 0
    failed_count = 0

    for invoice in pending:
        invoice_number = invoice.invoice_number
        try:
            upload_to_tax_authority(invoice)
            invoice.uploaded_at = datetime.utcnow()
            db.session.commit()
            success_count += 1
        except Exception as e:
            db.session.rollback()
            failed_count += 1
            logger.error(f"Failed to upload invoice {invoice_number}: {e}", exc_info=True)

    try:
        record_audit(
            user.id,
            'BATCH_UPLOAD',
            'invoice',
            None,
            {'year_month': year_month, 'success': success_count, 'failed': failed_count}
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    log_success('batch_upload', f"Period {year_month}: {success_count} uploaded, {failed_count} failed")

    return {
        'success': success_count,
        'failed': failed_count,
        'cutoff_date': cutoff.isoformat(),
        'past_cutoff': past_cutoff,
    }


def get_invoice(invoice_id: int) -> Optional[Invoice]:
    return db.session.get(Invoice, invoice_id)


def list_user_invoices(user_id: int, year_month: Optional[str] = None, status: Optional[str] = None,
                       limit: Optional[int] = None, offset: Optional[int] = None) -> List[Invoice]:
    query = Invoice.query.filter_by(user_id=user_id)

    if year_month:
        query = query.filter_by(year_month=year_month)

    if status:
        try:
            query = query.filter_by(status=InvoiceStatus(status))
        except ValueError:
            raise ValueError(f'未知的發票狀態：{status}')

    query = query.order_by(Invoice.created_at.desc(), Invoice.id.desc())

    if limit:
        query = query.limit(limit)
    if offset:
        query = query.offset(offset)

    return query.all()


def export_accounting_data(year_month: str) -> List[Dict[str, Any]]:
    """Issued invoices of a period in number order, as plain rows"""
    parse_period(year_month)

    invoices = Invoice.query.filter(
        Invoice.year_month == year_month,
        Invoice.status == InvoiceStatus.ISSUED
    ).order_by(Invoice.invoice_number.asc()).all()

    return [{
        'invoice_number': invoice.invoice_number,
        'issued_at': invoice.issued_at.strftime('%Y-%m-%d') if invoice.issued_at else '',
        'buyer_name': invoice.buyer_name,
        'buyer_tax_id': invoice.buyer_tax_id or '',
        'pre_tax_total': _money(invoice.pre_tax_total),
        'tax_total': _money(invoice.tax_total),
        'grand_total': _money(invoice.grand_total),
        'status': invoice.status.value,
    } for invoice in invoices]
