"""
Invoice number allocation for bimonthly tax periods

A year is split into six two-month periods labelled YYYY + start month + end
month (e.g. "20250102" for January-February 2025). Each period gets one active
number range; numbers are handed out sequentially as prefix + 8-digit cursor.
"""
import re
import logging
from datetime import date, datetime
from typing import Optional, Tuple

from sqlalchemy import update

from models import db, NumberRange

# Configure logging
logger = logging.getLogger(__name__)

RANGE_START_NUMBER = 10000001
RANGE_END_NUMBER = 10000500
NEXT_PERIOD_OPEN_DAY = 20
UPLOAD_CUTOFF_DAY = 15
ALLOCATION_ATTEMPTS = 3

PERIOD_PATTERN = re.compile(r'^(\d{4})(\d{2})(\d{2})$')


def _period_label(year: int, period_index: int) -> str:
    start_month = (period_index - 1) * 2 + 1
    end_month = period_index * 2
    return f"{year}{start_month:02d}{end_month:02d}"


def _period_index(month: int) -> int:
    # ceil(month / 2)
    return (month + 1) // 2


def current_period(today: Optional[date] = None) -> str:
    """
    Period label containing the given date

    Examples:
        >>> current_period(date(2025, 1, 15))
        '20250102'
        >>> current_period(date(2025, 12, 1))
        '20251112'
    """
    today = today or date.today()
    return _period_label(today.year, _period_index(today.month))


def next_period(today: Optional[date] = None) -> str:
    """Period following the current one; period 6 wraps to period 1 of next year"""
    today = today or date.today()
    index = _period_index(today.month) + 1
    year = today.year
    if index > 6:
        index = 1
        year += 1
    return _period_label(year, index)


def can_open_next_period(today: Optional[date] = None) -> bool:
    """Next period invoices may be issued from the 20th of the month on"""
    today = today or date.today()
    return today.day >= NEXT_PERIOD_OPEN_DAY


def parse_period(label: str) -> Tuple[int, int, int]:
    """
    Validate a period label and split it

    Returns:
        (year, start_month, end_month)

    Raises:
        ValueError: if the label is not a bimonthly period
    """
    match = PERIOD_PATTERN.match(str(label or ''))
    if not match:
        raise ValueError(f'期別格式錯誤：{label}（應為 YYYYMMMM，例如 20250102）')

    year, start_month, end_month = (int(part) for part in match.groups())
    if start_month not in (1, 3, 5, 7, 9, 11) or end_month != start_month + 1:
        raise ValueError(f'期別格式錯誤：{label}（起訖月份須為單月與其次月）')

    return year, start_month, end_month


def period_year(label: str) -> int:
    return parse_period(label)[0]


def resolve_requested_period(requested: str, today: Optional[date] = None) -> str:
    """
    Check that invoices may be issued for the requested period today

    The current period is always open. Any other period requires the next-period
    window to be open, and then only the immediately following period is accepted.

    Raises:
        ValueError: period not yet open, or neither current nor next
    """
    today = today or date.today()

    if requested == current_period(today):
        return requested

    if not can_open_next_period(today):
        raise ValueError(f'尚未到開立下期發票的時間（每月{NEXT_PERIOD_OPEN_DAY}日後可開立下期發票）')

    if requested != next_period(today):
        raise ValueError('只能開立當期或下期發票')

    return requested


def upload_cutoff_date(label: str) -> date:
    """Last day to upload a period's invoices: the 15th of the month after it ends"""
    year, _, end_month = parse_period(label)
    if end_month == 12:
        return date(year + 1, 1, UPLOAD_CUTOFF_DAY)
    return date(year, end_month + 1, UPLOAD_CUTOFF_DAY)


def get_or_create_number_range(year_month: str) -> NumberRange:
    """
    Active number range for a period, provisioning a new block when none exists

    Runs inside the caller's transaction; the new range is flushed, not committed.
    """
    parse_period(year_month)

    active_ranges = db.session.query(NumberRange).filter_by(
        year_month=year_month,
        active=True
    ).order_by(NumberRange.id).with_for_update().all()

    if len(active_ranges) > 1:
        range_ids = ', '.join(str(r.id) for r in active_ranges)
        raise ValueError(f'設定錯誤：期別 {year_month} 有多個啟用中的號碼段（ID: {range_ids}），請聯繫系統管理員')

    if active_ranges:
        return active_ranges[0]

    number_range = NumberRange(
        year_month=year_month,
        prefix=year_month[2:],
        start_number=RANGE_START_NUMBER,
        end_number=RANGE_END_NUMBER,
        current_number=RANGE_START_NUMBER,
        active=True,
        downloaded_at=datetime.utcnow(),
    )
    db.session.add(number_range)
    db.session.flush()

    logger.info(f"Provisioned number range {number_range.id} for period {year_month} "
                f"[{RANGE_START_NUMBER}, {RANGE_END_NUMBER}]")
    return number_range


def allocate_next_number(range_id: int) -> str:
    """
    Hand out the next number of a range and advance its cursor

    The cursor moves with a conditional UPDATE guarded by the value just read, so
    two writers can never both win the same slot. A lost race is retried a few
    times before giving up.

    Raises:
        ValueError: range missing, exhausted, or still contended after retries
    """
    for attempt in range(1, ALLOCATION_ATTEMPTS + 1):
        number_range = db.session.query(NumberRange).filter_by(
            id=range_id
        ).with_for_update().populate_existing().first()

        if not number_range:
            raise ValueError('發票號碼段不存在')

        if number_range.current_number > number_range.end_number:
            logger.warning(f"Number range {range_id} exhausted at {number_range.current_number}")
            raise ValueError('發票號碼已用完，請聯繫系統管理員')

        observed = number_range.current_number
        result = db.session.execute(
            update(NumberRange)
            .where(NumberRange.id == range_id, NumberRange.current_number == observed)
            .values(current_number=observed + 1)
        )

        if result.rowcount == 1:
            invoice_number = f"{number_range.prefix}{observed:08d}"
            logger.debug(f"Allocated {invoice_number} from range {range_id}")
            return invoice_number

        logger.warning(f"Cursor race on number range {range_id} (attempt {attempt}/{ALLOCATION_ATTEMPTS})")

    raise ValueError('發票號碼配號衝突，請稍後再試')


def get_available_invoice_number(requested_period: str, today: Optional[date] = None) -> Tuple[str, NumberRange]:
    """Gate the period, acquire its range and allocate one number from it"""
    year_month = resolve_requested_period(requested_period, today)
    number_range = get_or_create_number_range(year_month)
    return allocate_next_number(number_range.id), number_range
