from __future__ import annotations

import math

from coilplan.core.models import GRADE_RANK, STRICT_MARKERS, Coil, DemandLine, Grade

# 0.0501 instead of 0.05 so an exact 0.05 mm gap survives float noise.
THICKNESS_TOLERANCE_MM = 0.0501

SHORTAGE_EPSILON_KG = 0.1

_PIECES_EPSILON = 1e-9


def is_grade_compatible(coil_grade: Grade, required: Grade) -> bool:
    """A higher ranked coil grade may serve a lower requirement."""
    return GRADE_RANK[Grade(coil_grade)] >= GRADE_RANK[Grade(required)]


def check_compatibility(coil: Coil, demand: DemandLine) -> str | None:
    """Return None when `coil` may serve `demand`, else a human readable reason."""
    if not is_grade_compatible(coil.grade, demand.grade):
        return f"Grade mismatch: coil {coil.grade.value} cannot serve {demand.grade.value}"

    if int(coil.coating) != int(demand.coating):
        return f"Coating mismatch: coil Z{coil.coating} vs demand Z{demand.coating}"

    if coil.surface != demand.surface:
        return f"Surface mismatch: coil {coil.surface.value} vs demand {demand.surface.value}"

    if abs(float(coil.thickness) - float(demand.thickness)) > THICKNESS_TOLERANCE_MM:
        return (
            f"Thickness out of tolerance: coil {coil.thickness}mm vs demand "
            f"{demand.thickness}mm (allowed ±0.05mm)"
        )

    return None


def adjusted_quota(std_quota: float, std_thickness: float, actual_thickness: float) -> float:
    """Rescale a standard piece weight to the thickness actually being slit."""
    if not std_thickness:
        return 0.0
    return std_quota * (actual_thickness / std_thickness)


def pieces_from_weight(weight: float, quota: float) -> int:
    """Whole pieces contained in `weight`; fractional pieces never count."""
    if quota <= 0:
        return 0
    return math.floor(weight / quota + _PIECES_EPSILON)


def needs_production(demand: DemandLine) -> bool:
    return demand.balance < -SHORTAGE_EPSILON_KG or bool(demand.allow_overproduction)


def shortage_pieces(demand: DemandLine) -> int:
    """Signed piece count of the current balance (negative while short)."""
    return pieces_from_weight(demand.balance, demand.quota)


def is_strict_note(note: str | None) -> bool:
    upper = str(note or "").upper()
    return any(marker in upper for marker in STRICT_MARKERS)


def width_options(demand: DemandLine, coil_width: float) -> list[float]:
    """Candidate widths of `demand` that fit the coil.

    When either width carries a strict marker only the marked widths remain.
    """
    strict1 = is_strict_note(demand.spec1_note)
    strict2 = is_strict_note(demand.spec2_note)
    allow1, allow2 = True, True
    if strict1 or strict2:
        allow1, allow2 = strict1, strict2

    widths: list[float] = []
    if allow1 and 0 < demand.spec1 <= coil_width:
        widths.append(float(demand.spec1))
    if allow2 and 0 < demand.spec2 <= coil_width:
        widths.append(float(demand.spec2))
    return widths
