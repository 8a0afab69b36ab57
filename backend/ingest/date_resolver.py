"""
Date Resolver

Decides the authoritative purchase date for a message.

Precedence:
1. Date text extracted by the rule, parsed with the rule's date format.
   Calendar-date precision only (time of day is dropped).
   A format without a year takes it from the received-at timestamp.
2. The mailbox's received-at timestamp, full precision.

If neither is usable the parse fails; a message never defaults to "now".

Rule date formats are written with date-fns style tokens (``MMM dd, yyyy``,
``dd/MM/yyyy`` ...) and translated to ``strptime`` directives here. A format
that already contains ``%`` directives is used as-is.
"""

import re
from datetime import UTC, date, datetime, timedelta

from ingest.errors import DateUnresolvable
from ingest.logging_config import get_logger

logger = get_logger(__name__)

PRECISION_DATE = "date"
PRECISION_DATETIME = "datetime"

# Longest tokens first so "MMMM" wins over "MMM" and "MM"
_TOKEN_MAP = {
    "yyyy": "%Y",
    "yy": "%y",
    "y": "%Y",
    "MMMM": "%B",
    "MMM": "%b",
    "MM": "%m",
    "M": "%m",
    "dd": "%d",
    "d": "%d",
    "EEEE": "%A",
    "EEE": "%a",
    "E": "%a",
    "HH": "%H",
    "H": "%H",
    "hh": "%I",
    "h": "%I",
    "mm": "%M",
    "m": "%M",
    "ss": "%S",
    "s": "%S",
    "a": "%p",
}

_TOKEN_RE = re.compile(
    r"'[^']*'|"
    + "|".join(sorted((re.escape(t) for t in _TOKEN_MAP), key=len, reverse=True))
)


def to_strptime_format(fmt: str) -> str:
    """
    Translate a date-fns style format string to a strptime format.

    Examples:
        >>> to_strptime_format("MMM dd, yyyy")
        '%b %d, %Y'
        >>> to_strptime_format("dd/MM/yyyy 'at' HH:mm")
        '%d/%m/%Y at %H:%M'
    """
    if "%" in fmt:
        return fmt

    out = []
    pos = 0
    for match in _TOKEN_RE.finditer(fmt):
        out.append(fmt[pos : match.start()])
        token = match.group(0)
        if token.startswith("'"):
            out.append(token[1:-1].replace("%", "%%"))
        else:
            out.append(_TOKEN_MAP[token])
        pos = match.end()
    out.append(fmt[pos:])
    return "".join(out)


def parse_date_text(
    date_text: str, date_format: str, reference: datetime = None
) -> date | None:
    """
    Parse extracted date text with a rule's format; None when it does not parse.

    A format without a year takes it from ``reference`` (the received-at
    timestamp): the latest date not after the reference, allowing one day
    for senders whose local date runs ahead of UTC. Without a reference a
    yearless date is not parsed.
    """
    if not date_text or not date_format:
        return None

    fmt = to_strptime_format(date_format)
    text = date_text.strip()
    if "%Y" in fmt or "%y" in fmt:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            return None

    if reference is None:
        return None
    latest = reference.date() + timedelta(days=1)
    for year in (latest.year, latest.year - 1):
        try:
            value = datetime.strptime(f"{year} {text}", f"%Y {fmt}").date()
        except ValueError:
            continue
        if value <= latest:
            return value
    return None


def normalize_received_at(received_at) -> datetime | None:
    """Coerce a received-at value (datetime, ISO string, epoch ms) to an aware datetime."""
    if received_at is None or received_at == "":
        return None

    if isinstance(received_at, datetime):
        value = received_at
    elif isinstance(received_at, (int, float)):
        value = datetime.fromtimestamp(received_at / 1000, tz=UTC)
    else:
        try:
            value = datetime.fromisoformat(str(received_at).replace("Z", "+00:00"))
        except ValueError:
            return None

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def resolve_date(date_text: str | None, date_format: str | None, received_at):
    """
    Resolve the authoritative purchase date.

    Args:
        date_text: Date string extracted by the rule (may be None)
        date_format: Rule date format
        received_at: Message received-at timestamp (may be None)

    Returns:
        Tuple of (value, precision): a ``date`` with "date" precision, or an
        aware ``datetime`` with "datetime" precision

    Raises:
        DateUnresolvable: No parseable extracted date and no received-at timestamp
    """
    received = normalize_received_at(received_at)

    if date_text:
        parsed = parse_date_text(date_text, date_format, reference=received)
        if parsed is not None:
            return parsed, PRECISION_DATE
        logger.debug(
            f"Extracted date '{date_text}' does not match format '{date_format}', "
            "falling back to received_at"
        )

    if received is not None:
        return received, PRECISION_DATETIME

    raise DateUnresolvable()
