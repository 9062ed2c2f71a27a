from __future__ import annotations

import io
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from PIL import Image
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from backend.services.attachments import (
    AttachmentFailure,
    PdfRenderer,
    PreparedImage,
    ensure_renderer,
    preprocess_attachments,
)
from travel_expense.calculations import meal_deductions, per_diem_allowances
from travel_expense.config import ReportSettings, load_settings
from travel_expense.core import document_name, export_filename, format_euro, plain_number, to_number
from travel_expense.models import ExpenseForm, ExportArtifact

logger = logging.getLogger(__name__)

FONT = "Helvetica"
FONT_BOLD = "Helvetica-Bold"

MARGIN = 24
LINE_H = 14
TABLE_FONT = 11
HEADING_FONT = 12
LOGO_W = 180
LOGO_H = 84
LOGO_RIGHT = 24
ATTACHMENT_MARGIN = 20
CAPTION_FONT = 9
EMPTY = "—"

SUBJECT = "Reisekostenabrechnung"


class ExportState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExportNotReadyError(ValueError):
    """Raised when required form fields are missing."""

    def __init__(self, blockers: Sequence[str]):
        self.blockers = list(blockers)
        super().__init__("Form is not ready for export: " + "; ".join(self.blockers))


class ExportInProgressError(RuntimeError):
    """Raised when an export is requested while another one is running."""


class PdfExportError(RuntimeError):
    """Raised when the document cannot be composed or serialized."""


@dataclass
class ExportResult:
    artifact: ExportArtifact
    attachment_pages: int
    failures: List[AttachmentFailure] = field(default_factory=list)
    warning: Optional[str] = None


@dataclass
class PdfExportService:
    """Compose an expense form into a vector cover page plus one page per receipt image."""

    settings: ReportSettings = field(default_factory=ReportSettings)
    renderer_loader: Optional[Callable[[], PdfRenderer]] = None

    def __post_init__(self) -> None:
        self.state = ExportState.IDLE
        self.error_message = ""
        self.last_artifact: Optional[ExportArtifact] = None
        self._lock = threading.Lock()
        if self.renderer_loader is None:
            sources = self.settings.renderer_sources
            self.renderer_loader = lambda: ensure_renderer(sources)

    @classmethod
    def from_config(cls, config_path: Path | str) -> "PdfExportService":
        return cls(settings=load_settings(config_path))

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def export(self, form: ExpenseForm) -> ExportResult:
        """Run the whole pipeline; the artifact is published only if every step succeeds."""
        validation = form.validate()
        if not validation.ready_for_export:
            raise ExportNotReadyError(validation.blockers)
        if not self._lock.acquire(blocking=False):
            raise ExportInProgressError("An export is already running for this form")

        try:
            self.state = ExportState.GENERATING
            self.error_message = ""
            self.last_artifact = None
            try:
                result = self._generate(form)
            except Exception as exc:
                self.state = ExportState.FAILED
                self.error_message = f"PDF-Erzeugung fehlgeschlagen: {exc}"
                logger.exception("PDF export failed for form %s", form.form_id)
                raise PdfExportError(self.error_message) from exc

            self.last_artifact = result.artifact
            self.state = ExportState.SUCCEEDED
            logger.info(
                "Exported %s with %d page(s), %d attachment page(s), %d failure(s)",
                result.artifact.filename,
                result.artifact.page_count,
                result.attachment_pages,
                len(result.failures),
            )
            return result
        finally:
            self._lock.release()

    def _generate(self, form: ExpenseForm) -> ExportResult:
        totals = form.recompute()
        basis = form.basis
        logo = _load_logo(self.settings.logo_path)

        buffer = io.BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=A4, pageCompression=1)
        page_w, page_h = A4

        name = document_name(basis.employee_name, basis.week_label)
        pdf.setTitle(name)
        pdf.setSubject(SUBJECT)
        pdf.setKeywords(f"Reisekosten, {basis.employee_name}, {basis.week_label}, {basis.company_name}")
        pdf.setCreator(self.settings.creator)

        # Machine-readable line for OCR ingestion; white 1 pt text.
        pdf.setFillColorRGB(1, 1, 1)
        pdf.setFont(FONT, 1)
        total_text = "".join(format_euro(totals.grand_total).split())
        pdf.drawString(MARGIN, page_h - 8, f"DOC_NAME:{name} TOTAL_EUR:{total_text}")
        pdf.setFillColorRGB(0, 0, 0)

        cover = CoverPage(pdf, page_w, page_h)
        cover.draw_header(basis.company_name, basis.week_label, basis.employee_name)
        cover.draw_logo(logo)
        cover.draw_key_values(
            [("Name", basis.employee_name), ("Zweck", basis.purpose)],
            [("Beginn", basis.start_date), ("Ende", basis.end_date)],
        )
        self._draw_sections(cover, form)
        cover.draw_grand_total(f"Gesamte Reisekosten: {format_euro(totals.grand_total)}")

        prepared = preprocess_attachments(
            form.attachments,
            renderer_loader=self.renderer_loader,
            target_width=self.settings.target_width_px,
            quality=self.settings.jpeg_quality,
        )
        for image in prepared.images:
            draw_attachment_page(pdf, image)

        page_count = pdf.getPageNumber()
        pdf.save()

        artifact = ExportArtifact(
            content=buffer.getvalue(),
            filename=export_filename(basis.employee_name, basis.week_label),
            page_count=page_count,
        )
        return ExportResult(
            artifact=artifact,
            attachment_pages=len(prepared.images),
            failures=prepared.failures,
            warning=prepared.warning,
        )

    def _draw_sections(self, cover: "CoverPage", form: ExpenseForm) -> None:
        trip, per_diem, lodging, totals = form.trip, form.per_diem, form.lodging, form.totals

        km = to_number(trip.distance_km)
        rate = format_euro(form.mileage_rate).replace("€", "€/km")
        odometer = f"Tachostand: {trip.odometer_start or EMPTY} – {trip.odometer_end or EMPTY}"
        cover.draw_section(
            "Fahrtkosten",
            [
                ("Privat-PKW", f"Kennzeichen: {trip.license_plate or EMPTY}", odometer,
                 f"{plain_number(km)} km × {rate}", format_euro(totals.mileage)),
                ("Deutsche Bahn", "", "", "", format_euro(trip.rail)),
                ("Taxi", "", "", "", format_euro(trip.taxi)),
                ("Öffentliche Verkehrsmittel", "", "", "", format_euro(trip.transit)),
            ],
            "Zwischensumme Fahrtkosten",
            totals.trip,
        )

        allowances = per_diem_allowances(per_diem)
        deductions = meal_deductions(per_diem)
        cover.draw_section(
            "Verpflegungsmehraufwand",
            [
                ("Tage > 8 Std.", str(per_diem.days_over_8h), f"Satz {format_euro(per_diem.rate_over_8h)}", "",
                 format_euro(allowances["over_8h"])),
                ("Tage 24 Std.", str(per_diem.days_24h), f"Satz {format_euro(per_diem.rate_24h)}", "",
                 format_euro(allowances["full_day"])),
                ("abzgl. Frühstück", str(per_diem.skipped_breakfasts),
                 f"{format_euro(per_diem.breakfast_deduction)} pro Frühstück", "",
                 f"- {format_euro(deductions['breakfast'])}"),
                ("abzgl. Mittagessen", str(per_diem.skipped_lunches),
                 f"{format_euro(per_diem.lunch_deduction)} pro Mittagessen", "",
                 f"- {format_euro(deductions['lunch'])}"),
                ("abzgl. Abendessen", str(per_diem.skipped_dinners),
                 f"{format_euro(per_diem.dinner_deduction)} pro Abendessen", "",
                 f"- {format_euro(deductions['dinner'])}"),
            ],
            "Zwischensumme",
            totals.per_diem,
        )

        cover.draw_section(
            "Übernachtungskosten",
            [
                ("Tatsächliche Kosten (ohne Verpflegung)", "", "", "", format_euro(lodging.actual_cost)),
                ("Pauschale", "", "", "", format_euro(lodging.flat_rate)),
            ],
            "Zwischensumme",
            totals.lodging,
        )

        cover.draw_section(
            "Sonstige Auslagen",
            [(line.description or EMPTY, "", "", "", format_euro(line.amount)) for line in form.misc_lines],
            "Zwischensumme",
            totals.misc,
        )


class CoverPage:
    """Draws the cover page top-down; ``y`` is the distance from the top edge."""

    def __init__(self, pdf: canvas.Canvas, page_w: float, page_h: float):
        self.pdf = pdf
        self.page_w = page_w
        self.page_h = page_h
        self.x = MARGIN
        self.width = page_w - MARGIN * 2
        # Text columns; the amount column is right-aligned at the table edge.
        self.columns = [self.x, self.x + 130, self.x + 260, self.x + 390]
        self.amount_x = self.x + self.width - 2
        self.y = MARGIN + 56

    def text(self, text: str, x: float, y: float, size: float, bold: bool = False, align: str = "left") -> None:
        self.pdf.setFont(FONT_BOLD if bold else FONT, size)
        if align == "right":
            self.pdf.drawRightString(x, self.page_h - y, text)
        else:
            self.pdf.drawString(x, self.page_h - y, text)

    def rule(self, y: float) -> None:
        self.pdf.setLineWidth(0.3)
        self.pdf.line(self.x, self.page_h - y, self.x + self.width, self.page_h - y)

    def draw_header(self, company: str, week_label: str, employee_name: str) -> None:
        self.text(company or "", MARGIN, MARGIN + 2, 10)
        self.text("Reisekostenabrechnung", MARGIN, MARGIN + 22, 18, bold=True)
        week = f"KW {week_label} – " if week_label else ""
        self.text(f"{week}{employee_name or ''}", MARGIN, MARGIN + 36, 10)

    def draw_logo(self, logo: Optional[ImageReader]) -> None:
        if logo is None:
            return
        x = self.page_w - LOGO_RIGHT - LOGO_W
        self.pdf.drawImage(
            logo,
            x,
            self.page_h - MARGIN - LOGO_H,
            width=LOGO_W,
            height=LOGO_H,
            preserveAspectRatio=True,
            anchor="ne",
            mask="auto",
        )

    def draw_key_values(self, left: Sequence[tuple[str, str]], right: Sequence[tuple[str, str]]) -> None:
        left_end = self._key_value_block(left, MARGIN, self.y)
        right_end = self._key_value_block(right, MARGIN + 280, self.y)
        self.y = max(left_end, right_end) + 6

    def _key_value_block(self, rows: Sequence[tuple[str, str]], x: float, y: float) -> float:
        for label, value in rows:
            self.text(f"{label}:", x, y, 10, bold=True)
            self.text(str(value or EMPTY), x + 50, y, 10)
            y += LINE_H
        return y

    def draw_section(self, title: str, rows: Sequence[Sequence[str]], subtotal_label: str, subtotal: float) -> None:
        self._ensure_room(10 + 6 + 18 + LINE_H * 2)
        y = self.y + 10
        self.text(title, self.x, y, HEADING_FONT, bold=True)
        y += 6
        self.rule(y + 4)
        y += 18

        for row in rows:
            y = self._room_for_row(y)
            self._row(row, y)
            y += LINE_H

        y = self._room_for_row(y + LINE_H) - LINE_H
        self.rule(y + 4)
        y += LINE_H
        self._row((subtotal_label, "", "", "", format_euro(subtotal)), y, bold=True)
        self.y = y + 10

    def draw_grand_total(self, text: str) -> None:
        self._ensure_room(14)
        self.text(text, self.x + self.width, self.y + 4, 12, bold=True, align="right")
        self.y += 14

    def _row(self, cells: Sequence[str], y: float, bold: bool = False) -> None:
        *labels, amount = cells
        for column_x, label in zip(self.columns, labels):
            if label:
                self.text(str(label), column_x, y, TABLE_FONT, bold=bold)
        self.text(str(amount), self.amount_x, y, TABLE_FONT, bold=bold, align="right")

    def _room_for_row(self, y: float) -> float:
        if y + LINE_H <= self.page_h - MARGIN:
            return y
        self.pdf.showPage()
        return MARGIN + LINE_H

    def _ensure_room(self, height: float) -> None:
        if self.y + height > self.page_h - MARGIN:
            self.pdf.showPage()
            self.y = MARGIN


def draw_attachment_page(pdf: canvas.Canvas, image: PreparedImage) -> None:
    """Start a new A4 page oriented to the image and fit the image inside the margin."""
    pdf.showPage()
    page_w, page_h = landscape(A4) if image.is_landscape else A4
    pdf.setPageSize((page_w, page_h))

    max_w = page_w - ATTACHMENT_MARGIN * 2
    max_h = page_h - ATTACHMENT_MARGIN * 2
    scale = min(max_w / image.width, max_h / image.height)
    draw_w = image.width * scale
    draw_h = image.height * scale
    x = (page_w - draw_w) / 2
    y = (page_h - draw_h) / 2
    pdf.drawImage(ImageReader(io.BytesIO(image.content)), x, y, width=draw_w, height=draw_h)

    pdf.setFillColorRGB(0, 0, 0)
    pdf.setFont(FONT, CAPTION_FONT)
    pdf.drawString(ATTACHMENT_MARGIN, ATTACHMENT_MARGIN / 2, image.name or "Anhang")


def _load_logo(path: Optional[Path]) -> Optional[ImageReader]:
    if path is None:
        return None
    try:
        with Image.open(path) as logo:
            logo.load()
            return ImageReader(logo.copy())
    except (OSError, ValueError) as exc:
        logger.debug("Logo %s not used: %s", path, exc)
        return None


__all__ = [
    "ExportInProgressError",
    "ExportNotReadyError",
    "ExportResult",
    "ExportState",
    "PdfExportError",
    "PdfExportService",
]
