"""Minguo (ROC) Calendar Conversion.

Legacy ledgers store dates as fixed-width digit strings, either as a 7-digit
ROC date (``YYYMMDD``, ROC year = Gregorian year - 1911) or as an 8-digit
Gregorian date (``YYYYMMDD``). Because both encodings are zero-padded and
fixed-width, two ROC dates compare correctly as plain strings.

Every function here fails closed: malformed input (wrong length, non-numeric,
impossible calendar date, year outside 1900-2100) yields ``None`` instead of
raising, since blank or non-conforming dates are routine in legacy data and
must not abort a larger query.
"""

import calendar
from datetime import date, timedelta
from typing import Optional, Union

ROC_OFFSET = 1911
MIN_YEAR = 1900
MAX_YEAR = 2100
# First Gregorian year with a positive ROC year.
FIRST_ROC_YEAR = ROC_OFFSET + 1
EARLIEST_ROC_DATE = "0010101"

DateLike = Union[str, int, None]


def _valid_year(year: int) -> bool:
    return MIN_YEAR <= year <= MAX_YEAR


def to_roc(year: int, month: int, day: int) -> Optional[str]:
    """Encode a Gregorian date as a 7-digit ROC string.

    >>> to_roc(2024, 3, 5)
    '1130305'
    """
    try:
        if not _valid_year(year) or year < FIRST_ROC_YEAR:
            return None
        date(year, month, day)
    except (TypeError, ValueError):
        return None
    return f"{year - ROC_OFFSET:03d}{month:02d}{day:02d}"


def to_gregorian(value: DateLike) -> Optional[tuple[int, int, int]]:
    """Decode a 7-digit ROC or 8-digit Gregorian string to ``(year, month, day)``.

    The encoding is chosen by string length after trimming.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text.isdigit():
        return None

    if len(text) == 7:
        year = int(text[:3]) + ROC_OFFSET
        month, day = int(text[3:5]), int(text[5:7])
    elif len(text) == 8:
        year = int(text[:4])
        month, day = int(text[4:6]), int(text[6:8])
    else:
        return None

    if not _valid_year(year):
        return None
    try:
        date(year, month, day)
    except ValueError:
        return None
    return year, month, day


def to_date(value: DateLike) -> Optional[date]:
    """Decode either encoding to a :class:`datetime.date`."""
    parts = to_gregorian(value)
    return date(*parts) if parts else None


def from_date(value: date) -> Optional[str]:
    """Encode a :class:`datetime.date` as ROC."""
    return to_roc(value.year, value.month, value.day)


def normalize(value: DateLike) -> Optional[str]:
    """Return the ROC encoding of either input encoding, or None."""
    parts = to_gregorian(value)
    return to_roc(*parts) if parts else None


def add_days(value: DateLike, days: int) -> Optional[str]:
    """Shift a date by ``days`` (may be negative); result is ROC-encoded."""
    start = to_date(value)
    if start is None:
        return None
    try:
        return from_date(start + timedelta(days=days))
    except OverflowError:
        return None


def add_months(value: DateLike, months: int) -> Optional[str]:
    """Shift a date by calendar months, clamping the day to the target month's length.

    >>> add_months('1130131', 1)
    '1130229'
    """
    parts = to_gregorian(value)
    if parts is None:
        return None
    year, month, day = parts
    index = year * 12 + (month - 1) + months
    new_year, new_month = divmod(index, 12)
    new_month += 1
    new_day = min(day, calendar.monthrange(new_year, new_month)[1]) if 1 <= new_year <= 9999 else day
    return to_roc(new_year, new_month, new_day)


def years_before(today: date, years: int) -> Optional[str]:
    """ROC date exactly ``years`` calendar years before ``today`` (Feb 29 clamps to Feb 28)."""
    target_year = today.year - years
    day = min(today.day, calendar.monthrange(target_year, today.month)[1]) if target_year >= 1 else today.day
    return to_roc(target_year, today.month, day)


def today_roc(today: Optional[date] = None) -> str:
    """Today's date, ROC-encoded."""
    current = today or date.today()
    return f"{current.year - ROC_OFFSET:03d}{current.month:02d}{current.day:02d}"


def gregorian_year(value: DateLike) -> Optional[int]:
    """Gregorian year of an encoded date."""
    parts = to_gregorian(value)
    return parts[0] if parts else None


def month_of(value: DateLike) -> Optional[int]:
    parts = to_gregorian(value)
    return parts[1] if parts else None


def format_display(value: DateLike) -> Optional[str]:
    """``YYY/MM/DD`` display form (ROC) of either encoding."""
    roc = normalize(value)
    if roc is None:
        return None
    return f"{roc[:3]}/{roc[3:5]}/{roc[5:]}"


def format_birth_date(value: DateLike) -> Optional[str]:
    """``YYY/MM/DD (YYYY/MM/DD)`` display form used on the patient header."""
    parts = to_gregorian(value)
    if parts is None or parts[0] < FIRST_ROC_YEAR:
        return None
    year, month, day = parts
    return f"{year - ROC_OFFSET:03d}/{month:02d}/{day:02d} ({year}/{month:02d}/{day:02d})"


def calculate_age(birth_date: DateLike, today: Optional[date] = None) -> Optional[int]:
    """Age as the difference between the current and the birth Gregorian year.

    Preventive-care programs count ages per calendar year; the birthday
    within the year is ignored.
    """
    birth_year = gregorian_year(birth_date)
    if birth_year is None:
        return None
    current = today or date.today()
    age = current.year - birth_year
    return age if age >= 0 else None
