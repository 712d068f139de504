"""
Timestamp helpers

XMLTV timestamp parsing, epoch millisecond conversions and timezone rendering
for stored programs.
"""
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo
import logging
import re

logger = logging.getLogger(__name__)

_XMLTV_TIMESTAMP = re.compile(
    r"^(\d{4})(\d{2})(\d{2})(\d{2})(\d{2})(\d{2})"
    r"(?:\s*(Z|[+-]\d{4}|[+-]\d{2}:\d{2}))?"
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class DateFormatError(ValueError):
    """Raised when date format is invalid"""
    pass


def parse_iso8601_to_utc(value: str) -> datetime:
    """Parse an ISO8601 string ('Z' or offset suffix); naive values are taken as UTC."""
    try:
        dt = datetime.fromisoformat(value.strip())
    except (ValueError, AttributeError) as e:
        raise DateFormatError(f"Invalid ISO8601 datetime format: '{value}'") from e
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    try:
        return dt.astimezone(timezone.utc)
    except OverflowError as e:
        raise DateFormatError(f"ISO8601 datetime out of range: '{value}'") from e


def _parse_offset(token: str | None) -> timedelta:
    """Convert 'Z', '+HHMM' or '+HH:MM' into an offset (None means UTC)."""
    if not token or token == 'Z':
        return timedelta(0)
    sign = 1 if token[0] == '+' else -1
    digits = token[1:].replace(':', '')
    return sign * timedelta(hours=int(digits[0:2]), minutes=int(digits[2:4]))


def parse_xmltv_timestamp(raw: str | None) -> datetime | None:
    """
    Parse an XMLTV timestamp into an aware UTC datetime.

    Accepts 'YYYYMMDDHHMMSS' optionally followed (with or without whitespace)
    by 'Z', '+HHMM'/'-HHMM' or '+HH:MM'/'-HH:MM'. A missing offset means UTC.
    Strings that do not match are retried as generic ISO8601.

    Args:
        raw: Timestamp like '20080715003000 -0600'

    Returns:
        Timezone-aware datetime in UTC, or None if the value is absent or unparseable
    """
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None

    match = _XMLTV_TIMESTAMP.match(value)
    if match:
        year, month, day, hour, minute, second, offset = match.groups()
        try:
            local = datetime(
                int(year), int(month), int(day),
                int(hour), int(minute), int(second),
                tzinfo=timezone.utc,
            )
            return local - _parse_offset(offset)
        except (ValueError, OverflowError):
            logger.debug("XMLTV timestamp out of range: %r", raw)

    try:
        return parse_iso8601_to_utc(value)
    except DateFormatError:
        logger.debug("Unparseable timestamp: %r", raw)
        return None


def to_epoch_millis(dt: datetime) -> int:
    """Convert an aware datetime to integer epoch milliseconds."""
    return (dt - _EPOCH) // timedelta(milliseconds=1)


def from_epoch_millis(value: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return _EPOCH + timedelta(milliseconds=value)


def convert_to_timezone(dt: datetime, target_tz: str) -> str:
    """
    Render an aware datetime in the target timezone

    Args:
        dt: Timezone-aware datetime
        target_tz: Target timezone (IANA format or 'UTC')

    Returns:
        ISO8601 timestamp in target timezone
    """
    if target_tz == "UTC":
        return dt.astimezone(timezone.utc).isoformat()

    return dt.astimezone(ZoneInfo(target_tz)).isoformat()
