from __future__ import annotations

from html import escape
from typing import Iterable, Optional

from .models import ValidationResult
from .selftest import SelfTestResult


def render_validation_summary(validation: ValidationResult, warning: Optional[str] = None) -> str:
    notice = f'<p class="warning">{escape(warning)}</p>' if warning else ""
    if validation.ready_for_export:
        return (
            '<section class="validation-summary success">'
            "<h2>Validation Summary</h2>"
            "<p>Ready for export ✅</p>"
            f"{notice}"
            "</section>"
        )

    items = "".join(f"<li>{escape(blocker)}</li>" for blocker in validation.blockers)
    return (
        '<section class="validation-summary error">'
        "<h2>Validation Summary</h2>"
        "<p>Fill in the required fields below before generating the PDF.</p>"
        f"<ul>{items}</ul>"
        f"{notice}"
        "</section>"
    )


def render_self_test_report(results: Iterable[SelfTestResult]) -> str:
    rows = []
    for result in results:
        status = "✅" if result.ok else "❌"
        detail = f" – {escape(result.message)}" if result.message else ""
        rows.append(f'<li class="{"pass" if result.ok else "fail"}">{status} {escape(result.name)}{detail}</li>')
    return (
        '<section class="self-test">'
        "<h2>Self-Test</h2>"
        f"<ul>{''.join(rows)}</ul>"
        "</section>"
    )
