from __future__ import annotations

from dataclasses import dataclass
import math
from typing import TYPE_CHECKING, Any, Iterable, Optional

from .core import to_number

if TYPE_CHECKING:
    from .models import ExpenseForm, LodgingCost, MiscExpenseLine, PerDiemCost, TripCost


MILEAGE_RATE = 0.30

# Domestic per-diem rates and the per-meal deductions derived from the
# full-day rate (breakfast 20 %, lunch and dinner 40 % each).
PARTIAL_DAY_RATE = 14.0
FULL_DAY_RATE = 28.0
BREAKFAST_DEDUCTION = 5.6
LUNCH_DEDUCTION = 11.2
DINNER_DEDUCTION = 11.2


@dataclass(frozen=True)
class Totals:
    mileage: float = 0.0
    trip: float = 0.0
    per_diem: float = 0.0
    lodging: float = 0.0
    misc: float = 0.0
    grand_total: float = 0.0


def mileage_allowance(distance: Any, rate: float = MILEAGE_RATE) -> float:
    """Distance truncated to two decimals, floored at zero, times the rate."""
    km = max(0.0, math.floor(to_number(distance) * 100) / 100)
    return km * rate


def trip_subtotal(trip: "TripCost", rate: float = MILEAGE_RATE) -> float:
    return (
        mileage_allowance(trip.distance_km, rate)
        + to_number(trip.transit)
        + to_number(trip.rail)
        + to_number(trip.taxi)
    )


def meal_deductions(per_diem: "PerDiemCost") -> dict[str, float]:
    return {
        "breakfast": to_number(per_diem.skipped_breakfasts) * to_number(per_diem.breakfast_deduction),
        "lunch": to_number(per_diem.skipped_lunches) * to_number(per_diem.lunch_deduction),
        "dinner": to_number(per_diem.skipped_dinners) * to_number(per_diem.dinner_deduction),
    }


def per_diem_allowances(per_diem: "PerDiemCost") -> dict[str, float]:
    return {
        "over_8h": to_number(per_diem.days_over_8h) * to_number(per_diem.rate_over_8h),
        "full_day": to_number(per_diem.days_24h) * to_number(per_diem.rate_24h),
    }


def per_diem_subtotal(per_diem: "PerDiemCost") -> float:
    """Allowances minus meal deductions; the combined result never drops below zero."""
    gross = sum(per_diem_allowances(per_diem).values())
    deductions = sum(meal_deductions(per_diem).values())
    return max(0.0, gross - deductions)


def lodging_subtotal(lodging: "LodgingCost") -> float:
    # Actual cost and flat rate are added, not treated as alternatives.
    return to_number(lodging.actual_cost) + to_number(lodging.flat_rate)


def misc_subtotal(lines: Optional[Iterable["MiscExpenseLine"]]) -> float:
    return sum((to_number(line.amount) for line in lines or ()), 0.0)


def grand_total(trip: float, per_diem: float, lodging: float, misc: float) -> float:
    return trip + per_diem + lodging + misc


def compute_totals(form: "ExpenseForm") -> Totals:
    trip = trip_subtotal(form.trip, form.mileage_rate)
    per_diem = per_diem_subtotal(form.per_diem)
    lodging = lodging_subtotal(form.lodging)
    misc = misc_subtotal(form.misc_lines)
    return Totals(
        mileage=mileage_allowance(form.trip.distance_km, form.mileage_rate),
        trip=trip,
        per_diem=per_diem,
        lodging=lodging,
        misc=misc,
        grand_total=grand_total(trip, per_diem, lodging, misc),
    )


__all__ = [
    "MILEAGE_RATE",
    "Totals",
    "compute_totals",
    "grand_total",
    "lodging_subtotal",
    "meal_deductions",
    "mileage_allowance",
    "misc_subtotal",
    "per_diem_allowances",
    "per_diem_subtotal",
    "trip_subtotal",
]
