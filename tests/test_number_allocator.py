"""
Tests for number range provisioning and sequential allocation
"""
from datetime import date

import pytest

from models import db, NumberRange
from invoice_numbers import (
    RANGE_START_NUMBER,
    RANGE_END_NUMBER,
    get_or_create_number_range,
    allocate_next_number,
    get_available_invoice_number,
)


class TestNumberRangeProvisioning:

    def test_new_range_for_period(self, test_app):
        number_range = get_or_create_number_range('20250102')
        db.session.commit()

        assert number_range.prefix == '250102'
        assert number_range.start_number == RANGE_START_NUMBER == 10000001
        assert number_range.end_number == RANGE_END_NUMBER == 10000500
        assert number_range.current_number == RANGE_START_NUMBER
        assert number_range.active is True
        assert number_range.remaining == 500

    def test_existing_range_is_reused(self, test_app):
        first = get_or_create_number_range('20250102')
        db.session.commit()
        second = get_or_create_number_range('20250102')

        assert first.id == second.id
        assert NumberRange.query.count() == 1

    def test_one_range_per_period(self, test_app):
        get_or_create_number_range('20250102')
        get_or_create_number_range('20250304')
        db.session.commit()

        assert NumberRange.query.count() == 2

    def test_multiple_active_ranges_is_a_config_error(self, test_app):
        for _ in range(2):
            db.session.add(NumberRange(
                year_month='20250102', prefix='250102',
                start_number=RANGE_START_NUMBER, end_number=RANGE_END_NUMBER,
                current_number=RANGE_START_NUMBER, active=True
            ))
        db.session.commit()

        with pytest.raises(ValueError, match='多個啟用中的號碼段'):
            get_or_create_number_range('20250102')

    def test_invalid_period_rejected(self, test_app):
        with pytest.raises(ValueError, match='期別格式錯誤'):
            get_or_create_number_range('2025-01')


class TestAllocation:

    def test_numbers_are_prefix_plus_eight_digits(self, test_app):
        number_range = get_or_create_number_range('20250102')

        assert allocate_next_number(number_range.id) == '25010210000001'
        assert allocate_next_number(number_range.id) == '25010210000002'
        db.session.commit()

        db.session.refresh(number_range)
        assert number_range.current_number == 10000003

    def test_exhausted_range(self, test_app):
        number_range = get_or_create_number_range('20250102')
        number_range.current_number = RANGE_END_NUMBER
        db.session.commit()

        # the last slot is still handed out
        assert allocate_next_number(number_range.id) == '25010210000500'
        db.session.commit()

        with pytest.raises(ValueError, match='發票號碼已用完'):
            allocate_next_number(number_range.id)

        db.session.refresh(number_range)
        assert number_range.exhausted
        assert number_range.remaining == 0

    def test_full_block_then_exhausted(self, test_app):
        """500 sequential numbers fit in the block; the 501st allocation fails"""
        number_range = get_or_create_number_range('20250102')
        db.session.commit()

        allocated = [allocate_next_number(number_range.id) for _ in range(500)]
        db.session.commit()

        assert allocated[0] == '25010210000001'
        assert allocated[-1] == '25010210000500'
        assert len(set(allocated)) == 500
        for number in allocated:
            assert RANGE_START_NUMBER <= int(number[6:]) <= RANGE_END_NUMBER

        with pytest.raises(ValueError, match='發票號碼已用完'):
            allocate_next_number(number_range.id)

    def test_missing_range(self, test_app):
        with pytest.raises(ValueError, match='發票號碼段不存在'):
            allocate_next_number(9999)

    def test_rollback_returns_the_slot(self, test_app):
        number_range = get_or_create_number_range('20250102')
        db.session.commit()
        range_id = number_range.id

        assert allocate_next_number(range_id) == '25010210000001'
        db.session.rollback()

        assert allocate_next_number(range_id) == '25010210000001'


class TestGetAvailableInvoiceNumber:

    def test_current_period(self, test_app):
        number, number_range = get_available_invoice_number('20250102', date(2025, 1, 10))

        assert number == '25010210000001'
        assert number_range.year_month == '20250102'

    def test_next_period_after_the_20th(self, test_app):
        number, number_range = get_available_invoice_number('20250304', date(2025, 2, 21))

        assert number == '25030410000001'
        assert number_range.prefix == '250304'

    def test_next_period_too_early_creates_nothing(self, test_app):
        with pytest.raises(ValueError, match='尚未到開立下期發票的時間'):
            get_available_invoice_number('20250304', date(2025, 2, 10))

        assert NumberRange.query.count() == 0
