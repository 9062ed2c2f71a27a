from __future__ import annotations

import io

import pytest
from PIL import Image
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from backend.services import attachments
from travel_expense.models import ExpenseForm


def png_bytes(size: tuple[int, int] = (400, 600), mode: str = "RGB", color=(200, 30, 30)) -> bytes:
    if mode == "RGBA" and len(color) == 3:
        color = (*color, 128)
    image = Image.new(mode, size, color)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def pdf_bytes(pages: int = 1) -> bytes:
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=A4)
    for number in range(1, pages + 1):
        pdf.drawString(72, 720, f"Beleg Seite {number}")
        pdf.showPage()
    pdf.save()
    return buffer.getvalue()


@pytest.fixture(autouse=True)
def fresh_renderer():
    attachments.reset_renderer()
    yield
    attachments.reset_renderer()


@pytest.fixture
def ready_form() -> ExpenseForm:
    form = ExpenseForm()
    form.update_basis(
        employee_name="Erika Mustermann",
        purpose="Workshop Hamburg",
        start_date="2025-07-01",
        end_date="2025-07-02",
        company_name="Musterfirma GmbH",
    )
    form.update_trip(distance_km=100, transit=10)
    return form
