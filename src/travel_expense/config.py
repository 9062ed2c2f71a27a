from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from .calculations import (
    BREAKFAST_DEDUCTION,
    DINNER_DEDUCTION,
    FULL_DAY_RATE,
    LUNCH_DEDUCTION,
    MILEAGE_RATE,
    PARTIAL_DAY_RATE,
)


@dataclass(frozen=True)
class ReportSettings:
    """Defaults and constants for forms and the PDF export."""

    company_name: str = ""
    mileage_rate: float = MILEAGE_RATE
    rate_over_8h: float = PARTIAL_DAY_RATE
    rate_24h: float = FULL_DAY_RATE
    breakfast_deduction: float = BREAKFAST_DEDUCTION
    lunch_deduction: float = LUNCH_DEDUCTION
    dinner_deduction: float = DINNER_DEDUCTION
    target_width_px: int = 1360
    jpeg_quality: float = 0.72
    renderer_sources: tuple[str, ...] = ("pymupdf", "pdf2image")
    logo_path: Optional[Path] = None
    creator: str = "Reisekosten Webformular"
    mail_recipient: str = "rechnungswesen@example.com"
    mail_body: str = "Bitte die PDF-Reisekostenabrechnung im Anhang einfügen."
    source_path: Optional[Path] = field(default=None, compare=False)


def load_settings(path: Path | str) -> ReportSettings:
    """Read report settings from YAML; missing keys keep their defaults.

    Relative ``pdf.logo_path`` values are resolved against the config file's
    directory.
    """
    path = Path(path)
    with path.open("r", encoding="utf-8") as config_file:
        loaded = yaml.safe_load(config_file) or {}

    if not isinstance(loaded, dict):
        msg = f"Config file must contain a dictionary at root: {path}"
        raise ValueError(msg)

    rates = _section(loaded, "rates", path)
    per_diem = _section(rates, "per_diem", path)
    deductions = _section(rates, "meal_deductions", path)
    attachments = _section(loaded, "attachments", path)
    pdf = _section(loaded, "pdf", path)
    mail = _section(loaded, "mail", path)

    defaults = ReportSettings()
    logo_path = pdf.get("logo_path")
    if logo_path:
        logo_path = Path(logo_path)
        if not logo_path.is_absolute():
            logo_path = path.parent / logo_path

    renderers = attachments.get("renderers", defaults.renderer_sources)
    if isinstance(renderers, str) or not isinstance(renderers, (list, tuple)):
        msg = f"attachments.renderers must be a list of renderer names: {path}"
        raise ValueError(msg)

    return ReportSettings(
        company_name=str(loaded.get("company_name", defaults.company_name) or ""),
        mileage_rate=float(rates.get("mileage_per_km", defaults.mileage_rate)),
        rate_over_8h=float(per_diem.get("over_8h", defaults.rate_over_8h)),
        rate_24h=float(per_diem.get("full_day", defaults.rate_24h)),
        breakfast_deduction=float(deductions.get("breakfast", defaults.breakfast_deduction)),
        lunch_deduction=float(deductions.get("lunch", defaults.lunch_deduction)),
        dinner_deduction=float(deductions.get("dinner", defaults.dinner_deduction)),
        target_width_px=int(attachments.get("target_width_px", defaults.target_width_px)),
        jpeg_quality=float(attachments.get("jpeg_quality", defaults.jpeg_quality)),
        renderer_sources=tuple(str(name) for name in renderers),
        logo_path=logo_path or None,
        creator=str(pdf.get("creator", defaults.creator)),
        mail_recipient=str(mail.get("recipient", defaults.mail_recipient)),
        mail_body=str(mail.get("body", defaults.mail_body)),
        source_path=path,
    )


def _section(parent: dict[str, Any], key: str, path: Path) -> dict[str, Any]:
    value = parent.get(key) or {}
    if not isinstance(value, dict):
        msg = f"Config section '{key}' must be a dictionary: {path}"
        raise ValueError(msg)
    return value
