from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Union
from urllib.parse import quote

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, Response
from pydantic import BaseModel

from backend.services.pdf_export import (
    ExportInProgressError,
    ExportNotReadyError,
    PdfExportError,
    PdfExportService,
)
from travel_expense.config import load_settings
from travel_expense.core import build_mailto_link, sanitize_filename
from travel_expense.models import ExpenseForm
from travel_expense.selftest import run_self_tests
from travel_expense.ui import render_self_test_report, render_validation_summary

logging.basicConfig(
    level=os.getenv("TRAVEL_EXPENSE_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

CONFIG_PATH = Path(os.getenv("TRAVEL_EXPENSE_CONFIG", Path(__file__).resolve().parents[1] / "config" / "report.yaml"))
SETTINGS = load_settings(CONFIG_PATH)

app = FastAPI(title="Travel Expense Report API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

Amount = Union[str, float, None]


class BasisUpdate(BaseModel):
    employee_name: Optional[str] = None
    purpose: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    week_label: Optional[str] = None
    week_auto: Optional[bool] = None
    company_name: Optional[str] = None


class TripUpdate(BaseModel):
    license_plate: Optional[str] = None
    odometer_start: Amount = None
    odometer_end: Amount = None
    distance_km: Amount = None
    transit: Amount = None
    rail: Amount = None
    taxi: Amount = None


class PerDiemUpdate(BaseModel):
    days_over_8h: Amount = None
    days_24h: Amount = None
    rate_over_8h: Amount = None
    rate_24h: Amount = None
    skipped_breakfasts: Amount = None
    skipped_lunches: Amount = None
    skipped_dinners: Amount = None
    breakfast_deduction: Amount = None
    lunch_deduction: Amount = None
    dinner_deduction: Amount = None


class LodgingUpdate(BaseModel):
    actual_cost: Amount = None
    flat_rate: Amount = None


class MiscLineUpdate(BaseModel):
    description: Optional[str] = None
    amount: Amount = None


@dataclass
class FormSession:
    form: ExpenseForm
    exporter: PdfExportService
    warning: Optional[str] = None


sessions: dict[str, FormSession] = {}


def _get_session(form_id: str) -> FormSession:
    session = sessions.get(form_id)
    if not session:
        raise HTTPException(status_code=404, detail="Form not found")
    return session


def _changes(payload: BaseModel) -> dict:
    # Explicit nulls clear a field back to an empty input.
    return {key: ("" if value is None else value) for key, value in payload.model_dump(exclude_unset=True).items()}


def _form_view(session: FormSession) -> dict:
    form = session.form
    validation = form.validate()
    return {
        "form_id": form.form_id,
        "basis": asdict(form.basis),
        "trip": asdict(form.trip),
        "per_diem": asdict(form.per_diem),
        "lodging": asdict(form.lodging),
        "misc_lines": [asdict(line) for line in form.misc_lines],
        "attachments": [
            {"name": a.name, "kind": a.kind, "media_type": a.media_type, "size": len(a.content)}
            for a in form.attachments
        ],
        "totals": asdict(form.totals),
        "ready_for_export": validation.ready_for_export,
        "blockers": validation.blockers,
        "export_state": session.exporter.state.value,
        "export_error": session.exporter.error_message,
        "export_warning": session.warning,
    }


@app.post("/forms")
def create_form():
    form = ExpenseForm.create(SETTINGS)
    sessions[form.form_id] = FormSession(form=form, exporter=PdfExportService(settings=SETTINGS))
    return _form_view(sessions[form.form_id])


@app.get("/forms/{form_id}")
def get_form(form_id: str):
    return _form_view(_get_session(form_id))


@app.patch("/forms/{form_id}/basis")
def update_basis(form_id: str, payload: BasisUpdate):
    session = _get_session(form_id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    session.form.update_basis(**changes)
    return _form_view(session)


@app.patch("/forms/{form_id}/trip")
def update_trip(form_id: str, payload: TripUpdate):
    session = _get_session(form_id)
    session.form.update_trip(**_changes(payload))
    return _form_view(session)


@app.patch("/forms/{form_id}/per-diem")
def update_per_diem(form_id: str, payload: PerDiemUpdate):
    session = _get_session(form_id)
    session.form.update_per_diem(**_changes(payload))
    return _form_view(session)


@app.patch("/forms/{form_id}/lodging")
def update_lodging(form_id: str, payload: LodgingUpdate):
    session = _get_session(form_id)
    session.form.update_lodging(**_changes(payload))
    return _form_view(session)


@app.post("/forms/{form_id}/misc")
def add_misc_line(form_id: str, payload: Optional[MiscLineUpdate] = None):
    session = _get_session(form_id)
    payload = payload or MiscLineUpdate()
    amount = "" if payload.amount is None else payload.amount
    line = session.form.add_misc_line(description=payload.description or "", amount=amount)
    return {"line": asdict(line), "totals": asdict(session.form.totals)}


@app.patch("/forms/{form_id}/misc/{line_id}")
def update_misc_line(form_id: str, line_id: str, payload: MiscLineUpdate):
    session = _get_session(form_id)
    try:
        session.form.update_misc_line(line_id, **_changes(payload))
    except KeyError:
        raise HTTPException(status_code=404, detail="Expense line not found")
    return _form_view(session)


@app.delete("/forms/{form_id}/misc/{line_id}")
def remove_misc_line(form_id: str, line_id: str):
    session = _get_session(form_id)
    try:
        session.form.remove_misc_line(line_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Expense line not found")
    return _form_view(session)


@app.post("/forms/{form_id}/attachments")
async def upload_attachments(form_id: str, files: list[UploadFile] = File(...)):
    session = _get_session(form_id)

    accepted = []
    ignored = []
    for file in files:
        content = await file.read()
        attachment = session.form.add_attachment(file.filename or "Anhang", file.content_type, content)
        if attachment is None:
            ignored.append(file.filename)
            continue
        accepted.append({"name": attachment.name, "kind": attachment.kind, "size": len(content)})

    if ignored:
        logger.info("Ignored unsupported attachments for form %s: %s", form_id, ignored)
    return {"form_id": form_id, "accepted": accepted, "ignored": ignored}


@app.delete("/forms/{form_id}/attachments/{index}")
def remove_attachment(form_id: str, index: int):
    session = _get_session(form_id)
    try:
        session.form.remove_attachment(index)
    except IndexError:
        raise HTTPException(status_code=404, detail="Attachment not found")
    return _form_view(session)


@app.post("/forms/{form_id}/export")
def export_form(form_id: str):
    session = _get_session(form_id)
    session.warning = None
    try:
        result = session.exporter.export(session.form)
    except ExportNotReadyError as exc:
        raise HTTPException(status_code=422, detail=exc.blockers)
    except ExportInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except PdfExportError as exc:
        raise HTTPException(status_code=500, detail=str(exc))

    session.warning = result.warning
    headers = {"Content-Disposition": _content_disposition("attachment", result.artifact.filename)}
    if result.warning:
        headers["X-Export-Warning"] = quote(result.warning)
    return Response(content=result.artifact.content, media_type="application/pdf", headers=headers)


@app.get("/forms/{form_id}/preview")
def preview_export(form_id: str):
    session = _get_session(form_id)
    artifact = session.exporter.last_artifact
    if artifact is None:
        raise HTTPException(status_code=404, detail="No exported PDF yet")
    return Response(
        content=artifact.content,
        media_type="application/pdf",
        headers={"Content-Disposition": _content_disposition("inline", artifact.filename)},
    )


@app.get("/forms/{form_id}/summary", response_class=HTMLResponse)
def form_summary(form_id: str):
    session = _get_session(form_id)
    return render_validation_summary(session.form.validate(), warning=session.warning)


@app.get("/forms/{form_id}/mailto")
def mailto(form_id: str):
    session = _get_session(form_id)
    return {
        "href": build_mailto_link(SETTINGS.mail_recipient, session.form.basis.week_label, SETTINGS.mail_body)
    }


@app.get("/selftest", response_class=HTMLResponse)
def selftest():
    return render_self_test_report(run_self_tests())


@app.get("/health")
def health():
    return {"status": "ok"}


def _content_disposition(disposition: str, filename: str) -> str:
    return f"{disposition}; filename=\"{sanitize_filename(filename)}\"; filename*=utf-8''{quote(filename)}"
