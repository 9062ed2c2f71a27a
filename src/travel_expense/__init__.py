from .calculations import Totals, compute_totals
from .config import ReportSettings, load_settings
from .core import (
    build_mailto_link,
    document_name,
    export_filename,
    format_euro,
    iso_week_label,
    to_number,
)
from .models import (
    Attachment,
    BasisData,
    ExpenseForm,
    ExportArtifact,
    LodgingCost,
    MiscExpenseLine,
    PerDiemCost,
    TripCost,
    ValidationResult,
)
from .selftest import SelfTestResult, run_self_tests
from .ui import render_self_test_report, render_validation_summary

__all__ = [
    "Attachment",
    "BasisData",
    "ExpenseForm",
    "ExportArtifact",
    "LodgingCost",
    "MiscExpenseLine",
    "PerDiemCost",
    "ReportSettings",
    "SelfTestResult",
    "Totals",
    "TripCost",
    "ValidationResult",
    "build_mailto_link",
    "compute_totals",
    "document_name",
    "export_filename",
    "format_euro",
    "iso_week_label",
    "load_settings",
    "render_self_test_report",
    "render_validation_summary",
    "run_self_tests",
    "to_number",
]
