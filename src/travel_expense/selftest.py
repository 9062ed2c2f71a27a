"""Manual smoke check for the cost calculators."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from .calculations import per_diem_subtotal, trip_subtotal
from .core import to_number
from .models import PerDiemCost, TripCost

TOLERANCE = 1e-9


@dataclass(frozen=True)
class SelfTestResult:
    name: str
    ok: bool
    message: str = ""


def _check_close(name: str, actual: float, expected: float) -> SelfTestResult:
    if abs(actual - expected) < TOLERANCE:
        return SelfTestResult(name, True)
    return SelfTestResult(name, False, f"expected {expected}, got {actual}")


def _normalizer_reads_decimal_comma() -> SelfTestResult:
    return _check_close("to_number('1,5')", to_number("1,5"), 1.5)


def _trip_with_mileage_and_transit() -> SelfTestResult:
    trip = TripCost(distance_km=100, transit=10, rail=0, taxi=0)
    return _check_close("Fahrt 100km + 10€", trip_subtotal(trip), 40.0)


def _per_diem_with_meal_deductions() -> SelfTestResult:
    per_diem = PerDiemCost(
        days_over_8h=2,
        rate_over_8h=14,
        days_24h=1,
        rate_24h=28,
        skipped_breakfasts=1,
        breakfast_deduction=5.6,
        skipped_lunches=1,
        lunch_deduction=11.2,
        skipped_dinners=1,
        dinner_deduction=11.2,
    )
    return _check_close("Verpflegung inkl. F/M/A-Abzüge", per_diem_subtotal(per_diem), 28.0)


def _per_diem_never_negative() -> SelfTestResult:
    per_diem = PerDiemCost(
        days_over_8h=0,
        days_24h=0,
        skipped_breakfasts=10,
        breakfast_deduction=100,
        skipped_lunches=5,
        lunch_deduction=100,
        skipped_dinners=3,
        dinner_deduction=100,
    )
    subtotal = per_diem_subtotal(per_diem)
    if subtotal == 0:
        return SelfTestResult("Verpflegung nie negativ", True)
    return SelfTestResult("Verpflegung nie negativ", False, f"got {subtotal}")


CHECKS: tuple[Callable[[], SelfTestResult], ...] = (
    _normalizer_reads_decimal_comma,
    _trip_with_mileage_and_transit,
    _per_diem_with_meal_deductions,
    _per_diem_never_negative,
)


def run_self_tests(checks: tuple[Callable[[], SelfTestResult], ...] = CHECKS) -> list[SelfTestResult]:
    """Run the fixed calculator battery; a crashing check fails the whole run."""
    try:
        return [check() for check in checks]
    except Exception as exc:  # reported to the caller as a failed run
        return [SelfTestResult("Test runner crashed", False, str(exc))]
