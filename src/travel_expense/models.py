from __future__ import annotations

import base64
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Literal, Optional, Union
from uuid import uuid4

from .calculations import (
    BREAKFAST_DEDUCTION,
    DINNER_DEDUCTION,
    FULL_DAY_RATE,
    LUNCH_DEDUCTION,
    MILEAGE_RATE,
    PARTIAL_DAY_RATE,
    Totals,
    compute_totals,
)
from .config import ReportSettings
from .core import iso_week_label, plain_number, to_number, utc_now

AttachmentKind = Literal["image", "pdf"]
NumberInput = Union[str, float, int]


@dataclass
class BasisData:
    REQUIRED_FIELDS: ClassVar[dict[str, str]] = {
        "employee_name": "Name",
        "purpose": "Zweck",
        "start_date": "Beginn",
        "end_date": "Ende",
        "company_name": "Firma",
    }

    employee_name: str = ""
    purpose: str = ""
    start_date: str = ""
    end_date: str = ""
    week_label: str = ""
    week_auto: bool = True
    company_name: str = ""

    def missing_fields(self) -> list[str]:
        return [label for name, label in self.REQUIRED_FIELDS.items() if not getattr(self, name)]


@dataclass
class TripCost:
    license_plate: str = ""
    odometer_start: NumberInput = ""
    odometer_end: NumberInput = ""
    distance_km: NumberInput = ""
    transit: NumberInput = ""
    rail: NumberInput = ""
    taxi: NumberInput = ""

    def sync_distance(self) -> None:
        """Derive the distance from both odometer readings, overriding manual input."""
        if _is_blank(self.odometer_start) or _is_blank(self.odometer_end):
            return
        diff = max(0.0, to_number(self.odometer_end) - to_number(self.odometer_start))
        self.distance_km = plain_number(diff)


@dataclass
class PerDiemCost:
    days_over_8h: NumberInput = 0
    days_24h: NumberInput = 0
    rate_over_8h: NumberInput = PARTIAL_DAY_RATE
    rate_24h: NumberInput = FULL_DAY_RATE
    skipped_breakfasts: NumberInput = 0
    skipped_lunches: NumberInput = 0
    skipped_dinners: NumberInput = 0
    breakfast_deduction: NumberInput = BREAKFAST_DEDUCTION
    lunch_deduction: NumberInput = LUNCH_DEDUCTION
    dinner_deduction: NumberInput = DINNER_DEDUCTION


@dataclass
class LodgingCost:
    actual_cost: NumberInput = ""
    flat_rate: NumberInput = ""


@dataclass
class MiscExpenseLine:
    line_id: str = field(default_factory=lambda: uuid4().hex)
    description: str = ""
    amount: NumberInput = ""


@dataclass(frozen=True)
class Attachment:
    kind: AttachmentKind
    name: str
    media_type: str
    content: bytes = field(repr=False)

    @classmethod
    def from_upload(cls, name: str, media_type: Optional[str], content: bytes) -> Optional["Attachment"]:
        """Build an attachment, or ``None`` for anything that is not an image or PDF."""
        kind = attachment_kind(media_type)
        if kind is None:
            return None
        return cls(kind=kind, name=name, media_type=(media_type or "").lower(), content=content)


@dataclass(frozen=True)
class ExportArtifact:
    content: bytes = field(repr=False)
    filename: str
    page_count: int
    generated_at: str = field(default_factory=utc_now)

    @property
    def preview_url(self) -> str:
        encoded = base64.b64encode(self.content).decode("ascii")
        return f"data:application/pdf;base64,{encoded}"


@dataclass
class ValidationResult:
    ready_for_export: bool
    blockers: list[str]


@dataclass
class ExpenseForm:
    """In-memory state of one expense report; totals are recomputed on every change."""

    form_id: str = field(default_factory=lambda: uuid4().hex)
    basis: BasisData = field(default_factory=BasisData)
    trip: TripCost = field(default_factory=TripCost)
    per_diem: PerDiemCost = field(default_factory=PerDiemCost)
    lodging: LodgingCost = field(default_factory=LodgingCost)
    misc_lines: list[MiscExpenseLine] = field(default_factory=lambda: [MiscExpenseLine()])
    attachments: list[Attachment] = field(default_factory=list)
    mileage_rate: float = MILEAGE_RATE
    totals: Totals = field(default_factory=Totals)

    def __post_init__(self) -> None:
        self.recompute()

    @classmethod
    def create(cls, settings: Optional[ReportSettings] = None) -> "ExpenseForm":
        settings = settings or ReportSettings()
        return cls(
            basis=BasisData(company_name=settings.company_name),
            per_diem=PerDiemCost(
                rate_over_8h=settings.rate_over_8h,
                rate_24h=settings.rate_24h,
                breakfast_deduction=settings.breakfast_deduction,
                lunch_deduction=settings.lunch_deduction,
                dinner_deduction=settings.dinner_deduction,
            ),
            mileage_rate=settings.mileage_rate,
        )

    def recompute(self) -> Totals:
        self.totals = compute_totals(self)
        return self.totals

    def update_basis(self, **changes: Any) -> list[str]:
        changed = _apply_changes(self.basis, changes)
        if self.basis.week_auto and self.basis.start_date:
            self.basis.week_label = iso_week_label(self.basis.start_date)
        self.recompute()
        return changed

    def update_trip(self, **changes: Any) -> list[str]:
        changed = _apply_changes(self.trip, changes)
        self.trip.sync_distance()
        self.recompute()
        return changed

    def update_per_diem(self, **changes: Any) -> list[str]:
        changed = _apply_changes(self.per_diem, changes)
        self.recompute()
        return changed

    def update_lodging(self, **changes: Any) -> list[str]:
        changed = _apply_changes(self.lodging, changes)
        self.recompute()
        return changed

    def add_misc_line(self, description: str = "", amount: NumberInput = "") -> MiscExpenseLine:
        line = MiscExpenseLine(description=description, amount=amount)
        self.misc_lines.append(line)
        self.recompute()
        return line

    def update_misc_line(self, line_id: str, **changes: Any) -> list[str]:
        line = self.get_misc_line(line_id)
        if "line_id" in changes:
            raise AttributeError("line_id cannot be changed")
        changed = _apply_changes(line, changes)
        self.recompute()
        return changed

    def remove_misc_line(self, line_id: str) -> MiscExpenseLine:
        line = self.get_misc_line(line_id)
        self.misc_lines.remove(line)
        self.recompute()
        return line

    def get_misc_line(self, line_id: str) -> MiscExpenseLine:
        for line in self.misc_lines:
            if line.line_id == line_id:
                return line
        raise KeyError(f"Unknown expense line: {line_id}")

    def add_attachment(self, name: str, media_type: Optional[str], content: bytes) -> Optional[Attachment]:
        attachment = Attachment.from_upload(name, media_type, content)
        if attachment is not None:
            self.attachments.append(attachment)
        return attachment

    def remove_attachment(self, index: int) -> Attachment:
        if index < 0:
            raise IndexError(f"Attachment index out of range: {index}")
        return self.attachments.pop(index)

    def validate(self) -> ValidationResult:
        blockers = [f"Pflichtfeld fehlt: {label}" for label in self.basis.missing_fields()]
        return ValidationResult(ready_for_export=not blockers, blockers=blockers)


def attachment_kind(media_type: Optional[str]) -> Optional[AttachmentKind]:
    normalized = (media_type or "").lower()
    if normalized.startswith("image/"):
        return "image"
    if normalized == "application/pdf":
        return "pdf"
    return None


def _apply_changes(target: Any, changes: dict[str, Any]) -> list[str]:
    allowed = {item.name for item in fields(target)}
    changed: list[str] = []
    for field_name, new_value in changes.items():
        if field_name not in allowed:
            raise AttributeError(f"Unknown field: {field_name}")
        if getattr(target, field_name) != new_value:
            setattr(target, field_name, new_value)
            changed.append(field_name)
    return changed


def _is_blank(value: Any) -> bool:
    return value is None or str(value) == ""
