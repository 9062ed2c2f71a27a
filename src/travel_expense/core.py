from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
import math
from pathlib import Path
import re
from typing import Any
from urllib.parse import quote


ISO_TS = "%Y-%m-%dT%H:%M:%S.%fZ"

DOCUMENT_PREFIX = "Reisekosten"
DEFAULT_EMPLOYEE_NAME = "Mitarbeiter"
UNKNOWN_WEEK = "XX"
MAIL_SUBJECT_TEMPLATE = "Reisekosten KW {week}"

# Leading decimal literal, read the way a browser's parseFloat reads it.
_NUMBER_PREFIX = re.compile(r"\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")
# Characters encodeURIComponent leaves alone beyond quote()'s own safe set.
_URI_COMPONENT_SAFE = "!*'()"


def to_number(value: Any) -> float:
    """Turn form input into a float; anything unparseable becomes 0.

    Accepts numbers and locale-formatted strings such as ``"12,50"``. Only the
    first comma is treated as the decimal separator and parsing stops at the
    first character that cannot continue a number, so ``"25 300,0"`` is 25.
    """
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        candidate = value
    else:
        text = "" if value is None else str(value)
        match = _NUMBER_PREFIX.match(text.replace(",", ".", 1))
        if not match:
            return 0.0
        candidate = match.group(1)
    try:
        number = float(candidate)
    except (OverflowError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def plain_number(value: float) -> str:
    """Render a float the way the form echoes numbers back (``120`` / ``120.5``)."""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def format_euro(value: Any) -> str:
    """German currency format, e.g. ``1.234,56 €``."""
    amount = to_number(value)
    # Halves round away from zero, as German locale formatting does.
    cents = Decimal(repr(abs(amount))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    digits = f"{cents:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    sign = "-" if amount < 0 and digits != "0,00" else ""
    return f"{sign}{digits}\u00a0€"


def iso_week_label(value: date | datetime | str | None) -> str:
    """ISO 8601 ``week/year`` label for a date, or ``""`` if there is none."""
    if not value:
        return ""
    if isinstance(value, datetime):
        day = value.date()
    elif isinstance(value, date):
        day = value
    else:
        try:
            day = datetime.strptime(str(value).strip(), "%Y-%m-%d").date()
        except ValueError:
            return ""
    iso_year, week, _ = day.isocalendar()
    return f"{week}/{iso_year}"


def document_name(employee_name: str | None, week_label: str | None) -> str:
    week = (week_label or UNKNOWN_WEEK).replace("/", "-")
    return f"{DOCUMENT_PREFIX}_{employee_name or DEFAULT_EMPLOYEE_NAME}_KW{week}"


def export_filename(employee_name: str | None, week_label: str | None) -> str:
    return f"{document_name(employee_name, week_label)}.pdf"


def build_mailto_link(recipient: str, week_label: str | None, body: str) -> str:
    subject = MAIL_SUBJECT_TEMPLATE.format(week=week_label or UNKNOWN_WEEK)
    return (
        f"mailto:{recipient}"
        f"?subject={quote(subject, safe=_URI_COMPONENT_SAFE)}"
        f"&body={quote(body, safe=_URI_COMPONENT_SAFE)}"
    )


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime(ISO_TS)


def sanitize_filename(value: str) -> str:
    value = Path(value).name
    safe = re.sub(r"[^A-Za-z0-9._-]", "_", value)
    return safe or "upload.bin"
