# timeutil.py
import re
from datetime import datetime, date
from pytz import timezone

IST = timezone("Asia/Kolkata")

TIME_FORMAT_RE = re.compile(r"^(\d+):([0-5]\d)$")
DATE_FORMAT_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
MAX_HOURS = 999


# ── HH:MM ────────────────────────────────────────────────────────────────
def parse_time_to_decimal(time_value) -> float:
    """'3:30' -> 3.5, blank -> 0. Raises ValueError on anything else."""
    if time_value is None or str(time_value).strip() == "":
        return 0.0
    trimmed = str(time_value).strip()
    match = TIME_FORMAT_RE.match(trimmed)
    if not match:
        raise ValueError(f'Invalid time format: "{time_value}". Expected format: HH:MM (e.g., "3:30")')
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > MAX_HOURS:
        raise ValueError(f"Hours must be between 0 and {MAX_HOURS}, got {hours}")
    return hours + minutes / 60.0


def format_decimal_to_time(decimal_hours) -> str:
    decimal_hours = float(decimal_hours or 0)
    if decimal_hours < 0:
        decimal_hours = 0.0
    hours = int(decimal_hours)
    minutes = int(round((decimal_hours - hours) * 60))
    if minutes == 60:
        return f"{hours + 1}:00"
    return f"{hours}:{minutes:02d}"


def is_valid_time_format(time_value) -> bool:
    try:
        parse_time_to_decimal(time_value)
    except ValueError:
        return False
    return True


def normalize_time_input(time_value) -> float:
    if isinstance(time_value, bool):
        raise ValueError("Time must be a string in HH:MM format (e.g., \"3:30\")")
    if isinstance(time_value, (int, float)):
        return float(time_value) if time_value >= 0 else 0.0
    return parse_time_to_decimal(time_value)


def to_hhmm(time_value) -> str:
    """Canonical storage form: '03:30' -> '3:30', '' -> '0:00'. Only strings or None."""
    if time_value is not None and not isinstance(time_value, str):
        raise ValueError("Time must be a string in HH:MM format (e.g., \"3:30\")")
    return format_decimal_to_time(parse_time_to_decimal(time_value))


# ── DATES ────────────────────────────────────────────────────────────────
def normalize_date(date_string) -> str:
    if isinstance(date_string, datetime):
        return date_string.date().isoformat()
    if isinstance(date_string, date):
        return date_string.isoformat()
    if not date_string:
        raise ValueError("Valid date is required")
    date_part = str(date_string).split("T")[0]
    if not DATE_FORMAT_RE.match(date_part):
        raise ValueError(f"Invalid date format: {date_string}. Expected YYYY-MM-DD format.")
    datetime.strptime(date_part, "%Y-%m-%d")
    return date_part


def parse_date(date_string) -> date:
    return datetime.strptime(normalize_date(date_string), "%Y-%m-%d").date()


def current_date_ist() -> str:
    return datetime.now(IST).strftime("%Y-%m-%d")


def format_date_long(date_string) -> str:
    d = parse_date(date_string)
    return f"{d.strftime('%B')} {d.day}, {d.year}"
