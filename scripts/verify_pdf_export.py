from __future__ import annotations

import io
from pathlib import Path

import fitz
from PIL import Image, ImageDraw

from backend.services.pdf_export import PdfExportService
from travel_expense.models import ExpenseForm

CONFIG_PATH = Path("backend/config/report.yaml")


def sample_receipt(size: tuple[int, int] = (1800, 2400)) -> bytes:
    """Create a plain demo receipt image so the script runs without fixtures."""
    image = Image.new("RGB", size, "white")
    draw = ImageDraw.Draw(image)
    draw.rectangle((60, 60, size[0] - 60, size[1] - 60), outline="black", width=6)
    draw.text((120, 120), "Hotel Alpenblick - 2 Naechte - 240,00 EUR", fill="black")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def main() -> int:
    service = PdfExportService.from_config(CONFIG_PATH)
    form = ExpenseForm.create(service.settings)

    form.update_basis(
        employee_name="Max Mustermann",
        purpose="Kundentermin München",
        start_date="2026-02-02",
        end_date="2026-02-04",
    )
    form.update_trip(license_plate="B-MM 1234", odometer_start="25300", odometer_end="25884,5", rail="49,90")
    form.update_per_diem(days_over_8h=2, days_24h=1, skipped_breakfasts=2)
    form.update_lodging(actual_cost="240,00")
    form.update_misc_line(form.misc_lines[0].line_id, description="Parkhaus", amount="18,00")
    form.add_attachment("hotel.png", "image/png", sample_receipt())

    result = service.export(form)
    output_path = Path("artifacts") / result.artifact.filename
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(result.artifact.content)

    with fitz.open(stream=result.artifact.content, filetype="pdf") as document:
        first_page_text = document[0].get_text()
        problems = []
        if "DOC_NAME:" not in first_page_text or "TOTAL_EUR:" not in first_page_text:
            problems.append("machine-readable line missing on page 1")
        if document.metadata.get("title") != output_path.stem:
            problems.append(f"unexpected title {document.metadata.get('title')!r}")
        if document.page_count != 1 + result.attachment_pages:
            problems.append(f"expected {1 + result.attachment_pages} pages, found {document.page_count}")

    if problems:
        print("Verification failed:", "; ".join(problems))
        return 1

    print(f"Verification passed. Export generated at {output_path}")
    if result.warning:
        print(result.warning)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
