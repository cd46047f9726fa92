"""Ledger arithmetic shared by plan preview, execution and rollback.

Everything here is pure: the repository applies the results inside one
transaction. Balances are kept in standard (nominal thickness) weight, so a
deduction is always `pieces * quota`, never the physical weight cut.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Iterable

from coilplan.core.compat import adjusted_quota, pieces_from_weight
from coilplan.core.models import Coil, DemandLine, Impact, Plan, Usage

# Deductions at or below this are noise and leave no impact behind.
MIN_DEDUCTION_KG = 0.001

# A coil closer than this to empty is booked as empty.
COIL_EMPTY_KG = 0.1


class LedgerError(ValueError):
    """An execution or rollback could not be committed."""


def physical_output(plan: Plan, coil_width: float) -> dict[str, float]:
    """Physical kg produced per demand line across all segments of `plan`."""
    out: dict[str, float] = {}
    if coil_width <= 0:
        return out
    for seg in plan.segments:
        for strip in seg.strips:
            if strip.usage != Usage.PRODUCT or strip.demand_id is None:
                continue
            weight = seg.processing_weight * (strip.width / coil_width) * strip.count
            out[strip.demand_id] = out.get(strip.demand_id, 0.0) + weight
    return out


def impact_for(demand: DemandLine, physical_weight: float, coil_thickness: float) -> Impact | None:
    if physical_weight <= 0:
        return None

    pieces = 0
    actual_quota = adjusted_quota(demand.quota, demand.thickness, coil_thickness)
    if actual_quota > 0:
        pieces = pieces_from_weight(physical_weight, actual_quota)
        deduction = pieces * demand.quota
    else:
        # no usable quota: book the raw weight, credit no pieces
        deduction = physical_weight

    if deduction <= MIN_DEDUCTION_KG and pieces <= 0:
        return None

    return Impact(
        demand_id=demand.demand_id,
        material_code=demand.material_code,
        material_name=demand.name,
        weight_deducted=round(deduction, 2),
        pieces=int(pieces),
    )


def compute_impacts(plan: Plan, coil: Coil, demands: Iterable[DemandLine]) -> list[Impact]:
    """One impact per demand line the plan actually produces for."""
    produced = physical_output(plan, coil.width)
    impacts: list[Impact] = []
    for demand in demands:
        impact = impact_for(demand, produced.get(demand.demand_id, 0.0), coil.thickness)
        if impact is not None:
            impacts.append(impact)
    return impacts


def apply_impact(demand: DemandLine, impact: Impact) -> DemandLine:
    return replace(demand, balance=round(demand.balance + impact.weight_deducted, 2))


def revert_impact(demand: DemandLine, impact: Impact) -> DemandLine:
    return replace(demand, balance=round(demand.balance - impact.weight_deducted, 2))


def consume_coil(coil: Coil, weight: float, *, used_at: str) -> Coil:
    remaining = coil.remaining_weight - weight
    if remaining < COIL_EMPTY_KG:
        remaining = 0.0
    return replace(coil, remaining_weight=round(remaining, 1), last_used_at=used_at)


def restore_coil(coil: Coil, weight: float) -> Coil:
    restored = round(coil.remaining_weight + weight, 1)
    return replace(coil, remaining_weight=min(restored, coil.total_weight))


def plan_details(plan: Plan, coil: Coil, demands: Iterable[DemandLine]) -> list[dict]:
    """Per-strip preview rows for a plan, using the ledger's own arithmetic.

    `balance_after` is what the demand line will read once the plan is
    executed, i.e. exactly what `compute_impacts` would book.
    """
    demand_map = {d.demand_id: d for d in demands}
    booked = {i.demand_id: i for i in compute_impacts(plan, coil, demand_map.values())}

    rows: list[dict] = []
    for seg in plan.segments:
        for strip in seg.strips:
            per_strip = seg.processing_weight * (strip.width / coil.width) if coil.width else 0.0
            total = per_strip * strip.count
            demand = demand_map.get(strip.demand_id) if strip.demand_id else None

            width_label = f"{strip.width:g}"
            expected = 0
            before = None
            after = None
            if demand is not None:
                if strip.width == demand.spec1 and demand.spec1_note:
                    width_label += demand.spec1_note
                elif strip.width == demand.spec2 and demand.spec2_note:
                    width_label += demand.spec2_note
                q = adjusted_quota(demand.quota, demand.thickness, coil.thickness)
                expected = pieces_from_weight(total, q) if q > 0 else 0
                before = demand.balance
                impact = booked.get(demand.demand_id)
                after = round(demand.balance + (impact.weight_deducted if impact else 0.0), 2)

            rows.append(
                {
                    "segment": seg.ordinal,
                    "demand_id": strip.demand_id,
                    "material_code": demand.material_code if demand else strip.material_code,
                    "name": demand.name if demand else "",
                    "client": demand.client if demand else "",
                    "model": demand.model if demand else "",
                    "width": strip.width,
                    "width_label": width_label,
                    "count": strip.count,
                    "usage": strip.usage.value,
                    "weight_per_strip": round(per_strip, 2),
                    "total_weight": round(total, 2),
                    "expected_pieces": expected,
                    "balance_before": before,
                    "balance_after": after,
                }
            )
    return rows
