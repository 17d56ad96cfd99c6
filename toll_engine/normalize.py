"""
Normalization logic for toll export cells.
Converts raw cell values into canonical typed fields.

Every parser returns None for values it cannot interpret; normalize_row turns
missing required values into a ParseError so the importer can record a skip.
"""
import logging
import math
import numbers
import re
import uuid
from datetime import date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Mapping, Optional

import pandas as pd

from .canonical_fields import CanonicalField
from .errors import ParseError
from .mappings import (
    COUNTRY_ALPHA3,
    COUNTRY_KEYWORDS,
    DEFAULT_VAT_BY_COUNTRY,
    DEFAULT_VAT_RATE,
    DUTCH_WEEKDAYS,
)
from .schemas import TollRecord

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
MIDNIGHT = "00:00:00"

# Excel serial day 0 (accounts for the 1900 leap-year bug)
EXCEL_EPOCH = date(1899, 12, 30)
# Serials outside 1950..2099 are treated as plain numbers, not dates
MIN_EXCEL_SERIAL = 18264
MAX_EXCEL_SERIAL = 73050

_DAY_FIRST_RE = re.compile(r"^(\d{1,2})[-/.](\d{1,2})[-/.](\d{4}|\d{2})(?:[\sT].*)?$")
_YEAR_FIRST_RE = re.compile(r"^(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})(?:[\sT].*)?$")
_CLOCK_RE = re.compile(r"(\d{1,2}):(\d{2})(?::(\d{2}))?")
_CURRENCY_RE = re.compile(r"(?i)eur(o)?|€|chf|£|\$|\s")
_NUMBER_RE = re.compile(r"^[-+]?(\d+(\.\d*)?|\.\d+)$")
_ISO2_RE = re.compile(r"^[A-Z]{2}$")


def is_blank(value: Any) -> bool:
    """True for None, NaN/NaT and whitespace-only strings."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def is_empty_row(cells) -> bool:
    return all(is_blank(c) for c in cells)


def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Number) and not isinstance(value, bool)


# ==================== Dates & Times ====================

def parse_date(value: Any) -> Optional[date]:
    """
    Parse a date cell.

    Accepts native date/datetime/Timestamp cells, Excel serial numbers,
    dd-mm-yyyy / dd/mm/yyyy / dd.mm.yyyy (2-digit year -> 20xx), yyyy-mm-dd,
    and falls back to a generic day-first parse for spelled-out dates.
    """
    if is_blank(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if _is_number(value):
        serial = float(value)
        if math.isnan(serial) or serial < MIN_EXCEL_SERIAL or serial > MAX_EXCEL_SERIAL:
            return None
        return EXCEL_EPOCH + timedelta(days=int(serial))

    text = str(value).strip()

    match = _DAY_FIRST_RE.match(text)
    if match:
        day, month, year = match.groups()
        if len(year) == 2:
            year = f"20{year}"
        return _safe_date(int(year), int(month), int(day))

    match = _YEAR_FIRST_RE.match(text)
    if match:
        year, month, day = match.groups()
        return _safe_date(int(year), int(month), int(day))

    # Generic fallback is limited to spelled-out dates such as "5 Jan 2026"
    if re.search(r"\d{4}", text) and re.search(r"[A-Za-z]", text):
        try:
            parsed = pd.to_datetime(text, dayfirst=True, errors="coerce")
        except (ValueError, TypeError, OverflowError):
            return None
        if pd.isna(parsed):
            return None
        return parsed.date()

    return None


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _format_clock(hours: int, minutes: int, seconds: int = 0) -> Optional[str]:
    if not (0 <= hours < 24 and 0 <= minutes < 60 and 0 <= seconds < 60):
        return None
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def parse_usage_time(value: Any) -> Optional[str]:
    """
    Parse a clock time into canonical HH:MM:SS.

    Sources: the clock component of datetime cells, Excel fractional-day
    numbers, or free text containing HH:MM[:SS]. Out-of-range components
    are rejected.
    """
    if is_blank(value):
        return None
    if isinstance(value, (pd.Timestamp, datetime)):
        return _format_clock(value.hour, value.minute, value.second)
    if isinstance(value, time):
        return _format_clock(value.hour, value.minute, value.second)
    if isinstance(value, date):
        return None
    if _is_number(value):
        number = float(value)
        if math.isnan(number) or number < 0:
            return None
        fraction = number - math.floor(number)
        if number >= 1 and fraction == 0:
            return None
        seconds = int(round(fraction * 86400))
        if seconds >= 86400:
            return None
        return _format_clock(seconds // 3600, (seconds % 3600) // 60, seconds % 60)

    match = _CLOCK_RE.search(str(value))
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return _format_clock(int(hours), int(minutes), int(seconds or 0))


def time_from_date_cell(value: Any) -> Optional[str]:
    """
    Recover a usage time from a combined date/time cell.

    A midnight clock on a typed cell usually means the cell held a plain date,
    so it is treated as unknown.
    """
    if isinstance(value, str):
        return parse_usage_time(value) if _CLOCK_RE.search(value) else None
    recovered = parse_usage_time(value)
    if recovered == MIDNIGHT:
        return None
    return recovered


def week_id_for(usage_date: date) -> str:
    """ISO week bucket, e.g. 2026-02."""
    iso_year, iso_week, _ = usage_date.isocalendar()
    return f"{iso_year}-{iso_week:02d}"


def weekday_name(usage_date: date) -> str:
    return DUTCH_WEEKDAYS[usage_date.weekday()]


# ==================== Money & VAT ====================

def _to_decimal(text: str) -> Optional[Decimal]:
    if not _NUMBER_RE.match(text):
        return None
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


def parse_money(value: Any) -> Optional[Decimal]:
    """
    Parse an amount cell into a Decimal rounded to cents.

    Strings lose currency markers and whitespace. With both '.' and ',' present
    the dot is a thousands separator; a lone ',' is the decimal separator.
    """
    if is_blank(value) or isinstance(value, bool):
        return None
    if _is_number(value):
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return None
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)

    cleaned = _CURRENCY_RE.sub("", str(value))
    if "." in cleaned and "," in cleaned:
        cleaned = cleaned.replace(".", "").replace(",", ".")
    elif "," in cleaned:
        cleaned = cleaned.replace(",", ".")

    amount = _to_decimal(cleaned)
    if amount is None:
        return None
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_vat(value: Any) -> Optional[int]:
    """
    Parse a VAT cell into an integer percentage.

    Values up to 1 are fractions (0,21 -> 21); larger values are rounded
    percentages (21 -> 21). Negative or >100 values are rejected.
    """
    if is_blank(value) or isinstance(value, bool):
        return None
    if _is_number(value):
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return None
        number = Decimal(str(value))
    else:
        text = str(value).replace("%", "").strip().replace(",", ".")
        text = re.sub(r"\s", "", text)
        number = _to_decimal(text)
        if number is None:
            return None

    if number < 0:
        return None
    if number <= 1:
        number = number * 100
    rate = int(number.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if rate > 100:
        return None
    return rate


def default_vat_for_country(code: Optional[str]) -> int:
    return DEFAULT_VAT_BY_COUNTRY.get((code or "").upper(), DEFAULT_VAT_RATE)


# ==================== Country & Plate ====================

def map_country(value: Any) -> Optional[str]:
    """
    Map free-text country to ISO-2.

    Two-letter codes pass through uppercased; known alpha-3 codes and
    keyword spellings are translated; anything else is kept uppercased.
    """
    if is_blank(value):
        return None
    text = str(value).strip()
    upper = text.upper()
    if _ISO2_RE.match(upper):
        return upper
    if upper in COUNTRY_ALPHA3:
        return COUNTRY_ALPHA3[upper]

    lowered = text.lower()
    for code, keywords in COUNTRY_KEYWORDS.items():
        if any(keyword in lowered for keyword in keywords):
            return code
    logger.debug(f"[NORMALIZE] Unrecognized country '{text}' kept as-is")
    return upper


def normalize_plate(value: Any) -> Optional[str]:
    if is_blank(value):
        return None
    plate = " ".join(str(value).split()).upper()
    return plate or None


# ==================== Row Normalization ====================

def normalize_row(
    row: Mapping[str, Any],
    source: str,
    default_country: str,
    row_number: Optional[int] = None,
) -> TollRecord:
    """
    Normalize one mapped row into a TollRecord.

    Args:
        row: Raw cells keyed by canonical field name (only mapped fields present)
        source: Provenance label stored on the record
        default_country: Country used when no country column is mapped
        row_number: 1-based spreadsheet row number for error reporting

    Raises:
        ParseError: If plate, date, amount or country is unusable
    """
    date_cell = row.get(CanonicalField.USAGE_DATE.value)

    plate = normalize_plate(row.get(CanonicalField.LICENSE_PLATE.value))
    usage_date = parse_date(date_cell)
    amount = parse_money(row.get(CanonicalField.AMOUNT.value))

    if CanonicalField.COUNTRY.value in row:
        country = map_country(row.get(CanonicalField.COUNTRY.value))
    else:
        country = default_country

    reasons = []
    if not plate:
        reasons.append("missing plate")
    if usage_date is None:
        reasons.append("missing/invalid date")
    if amount is None:
        reasons.append("missing/invalid amount")
    elif amount < 0:
        reasons.append("negative amount")
    if not country:
        reasons.append("missing country")
    if reasons:
        raise ParseError(", ".join(reasons), row_number)

    usage_time = None
    if CanonicalField.USAGE_TIME.value in row:
        usage_time = parse_usage_time(row.get(CanonicalField.USAGE_TIME.value))
    if usage_time is None:
        usage_time = time_from_date_cell(date_cell)

    vat_rate = parse_vat(row.get(CanonicalField.VAT_RATE.value))
    if vat_rate is None:
        vat_rate = default_vat_for_country(country)

    location = row.get(CanonicalField.LOCATION.value)
    location = None if is_blank(location) else str(location).strip()

    return TollRecord(
        id=str(uuid.uuid4()),
        country=country,
        license_plate=plate,
        usage_date=usage_date,
        usage_time=usage_time,
        amount=amount,
        vat_rate=vat_rate,
        week_id=week_id_for(usage_date),
        source=source,
        location=location,
        created_at=datetime.now(),
    )
