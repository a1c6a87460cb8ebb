"""Date parsing and token-based formatting.

Formats use Luxon-style tokens (``yyyy-MM-dd HH:mm:ss``), which is what users
write in their folder, filename and date settings. Text in single quotes is
emitted verbatim (``yyyy-MM-dd'T'HH:mm``).
"""

from __future__ import annotations

import logging
import re
from datetime import datetime

from vaultsync.core.errors import VaultSyncError

logger = logging.getLogger(__name__)

DATE_FORMAT_W_OUT_SECONDS = "yyyy-MM-dd'T'HH:mm"
DATE_FORMAT = f"{DATE_FORMAT_W_OUT_SECONDS}:ss"

MONTH_NAMES = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)
WEEKDAY_NAMES = (
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday",
)

# Longer tokens first so the alternation prefers them.
_TOKEN_RE = re.compile(
    r"'(?P<literal>[^']*)'"
    r"|(?P<token>yyyy|yy|y|MMMM|MMM|MM|M|LLLL|LLL|LL|L|dd|d|ooo|o|HH|H|hh|h|mm|m"
    r"|ss|s|SSS|S|a|EEEE|EEE|E|cccc|ccc|c|ZZZ|ZZ|Z)"
    r"|(?P<char>.)",
    re.DOTALL,
)

# fromisoformat before 3.11 only takes 3 or 6 fractional digits
_FRACTION_RE = re.compile(r"(?<=:\d{2})\.(\d+)")

_STRPTIME_TOKENS = {
    "yyyy": "%Y",
    "y": "%Y",
    "yy": "%y",
    "MMMM": "%B",
    "LLLL": "%B",
    "MMM": "%b",
    "LLL": "%b",
    "MM": "%m",
    "M": "%m",
    "LL": "%m",
    "L": "%m",
    "dd": "%d",
    "d": "%d",
    "ooo": "%j",
    "o": "%j",
    "HH": "%H",
    "H": "%H",
    "hh": "%I",
    "h": "%I",
    "mm": "%M",
    "m": "%M",
    "ss": "%S",
    "s": "%S",
    "SSS": "%f",
    "S": "%f",
    "a": "%p",
    "EEEE": "%A",
    "cccc": "%A",
    "EEE": "%a",
    "ccc": "%a",
    "ZZZ": "%z",
    "ZZ": "%z",
}


class InvalidDateError(VaultSyncError, ValueError):
    """A string could not be parsed as a calendar date/time."""


def _offset(dt: datetime, style: str) -> str:
    delta = dt.utcoffset()
    minutes = int(delta.total_seconds() // 60) if delta is not None else 0
    sign = "-" if minutes < 0 else "+"
    hours, mins = divmod(abs(minutes), 60)
    if style == "Z":
        return f"{sign}{hours}" + (f":{mins:02d}" if mins else "")
    if style == "ZZ":
        return f"{sign}{hours:02d}:{mins:02d}"
    return f"{sign}{hours:02d}{mins:02d}"


def _render_token(dt: datetime, token: str) -> str:
    if token == "yyyy":
        return f"{dt.year:04d}"
    if token == "yy":
        return f"{dt.year % 100:02d}"
    if token == "y":
        return str(dt.year)
    if token in ("MMMM", "LLLL"):
        return MONTH_NAMES[dt.month - 1]
    if token in ("MMM", "LLL"):
        return MONTH_NAMES[dt.month - 1][:3]
    if token in ("MM", "LL"):
        return f"{dt.month:02d}"
    if token in ("M", "L"):
        return str(dt.month)
    if token == "dd":
        return f"{dt.day:02d}"
    if token == "d":
        return str(dt.day)
    if token == "ooo":
        return f"{dt.timetuple().tm_yday:03d}"
    if token == "o":
        return str(dt.timetuple().tm_yday)
    if token == "HH":
        return f"{dt.hour:02d}"
    if token == "H":
        return str(dt.hour)
    if token in ("hh", "h"):
        hour = dt.hour % 12 or 12
        return f"{hour:02d}" if token == "hh" else str(hour)
    if token == "mm":
        return f"{dt.minute:02d}"
    if token == "m":
        return str(dt.minute)
    if token == "ss":
        return f"{dt.second:02d}"
    if token == "s":
        return str(dt.second)
    if token == "SSS":
        return f"{dt.microsecond // 1000:03d}"
    if token == "S":
        return str(dt.microsecond // 1000)
    if token == "a":
        return "AM" if dt.hour < 12 else "PM"
    if token in ("EEEE", "cccc"):
        return WEEKDAY_NAMES[dt.weekday()]
    if token in ("EEE", "ccc"):
        return WEEKDAY_NAMES[dt.weekday()][:3]
    if token in ("E", "c"):
        return str(dt.isoweekday())
    return _offset(dt, token)


def parse_date(value: str, pattern: str | None = None) -> datetime:
    """Parse a date string into a timezone-aware datetime.

    Without a pattern the value must be ISO-8601 (``Z`` suffix, date-only and
    space-separated forms accepted). Naive values are taken as local time.

    Raises:
        InvalidDateError: if the value cannot be parsed.
    """
    if not value or not value.strip():
        raise InvalidDateError(f"Invalid date: {value!r}")
    value = value.strip()
    try:
        if pattern is None:
            parsed = datetime.fromisoformat(_normalize_iso(value))
        else:
            parsed = datetime.strptime(value, _to_strptime(pattern))
    except ValueError as e:
        raise InvalidDateError(f"Invalid date: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def _normalize_iso(value: str) -> str:
    value = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    return value.replace("Z", "+00:00")


def _to_strptime(pattern: str) -> str:
    parts: list[str] = []
    for match in _TOKEN_RE.finditer(pattern):
        if match.group("literal") is not None:
            parts.append(match.group("literal").replace("%", "%%") or "'")
        elif match.group("token") is not None:
            token = match.group("token")
            if token not in _STRPTIME_TOKENS:
                raise ValueError(f"Token {token!r} cannot be parsed")
            parts.append(_STRPTIME_TOKENS[token])
        else:
            parts.append(match.group("char").replace("%", "%%"))
    return "".join(parts)


def format_date(value: datetime | str, pattern: str) -> str:
    """Render a date in local time using Luxon-style tokens.

    Raises:
        InvalidDateError: if ``value`` is a string that is not a date.
    """
    dt = parse_date(value) if isinstance(value, str) else value
    dt = dt.astimezone()

    parts: list[str] = []
    for match in _TOKEN_RE.finditer(pattern):
        if match.group("literal") is not None:
            # '' is an escaped single quote
            parts.append(match.group("literal") or "'")
        elif match.group("token") is not None:
            parts.append(_render_token(dt, match.group("token")))
        else:
            parts.append(match.group("char"))
    return "".join(parts)


def parse_date_time(value: str | None) -> datetime | None:
    """Parse the persisted last-sync timestamp. Empty means unbounded."""
    if not value:
        return None
    for pattern in (DATE_FORMAT, DATE_FORMAT_W_OUT_SECONDS, None):
        try:
            return parse_date(value, pattern)
        except InvalidDateError:
            continue
    logger.warning(f"Ignoring unparseable sync timestamp {value!r}")
    return None
