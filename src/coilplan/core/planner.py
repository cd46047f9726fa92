from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import replace
from typing import Callable, Iterable
from uuid import uuid4

from coilplan.core.compat import SHORTAGE_EPSILON_KG, check_compatibility, needs_production
from coilplan.core.models import (
    Coil,
    DemandLine,
    Plan,
    PlanningResult,
    Segment,
    SolverConfig,
    Strip,
    Usage,
)
from coilplan.core.patterns import Pattern, solve_segment_patterns

logger = logging.getLogger(__name__)

PLAN_LABELS = ("Plan A", "Plan B", "Plan C")

# Coils below this weight are treated as used up when picking a coil.
MIN_USABLE_COIL_KG = 10.0

STATUS_OK = "ok"
STATUS_NO_VIABLE_DEMAND = "no_viable_demand"
STATUS_EFFICIENCY_BELOW_THRESHOLD = "efficiency_below_threshold"
STATUS_COIL_EXHAUSTED = "coil_exhausted"


def floor_tenth(value: float) -> float:
    """Round down to 0.1 kg so a segment never books more than the coil holds."""
    return math.floor(value * 10 + 1e-6) / 10


def allowed_output(demand: DemandLine, config: SolverConfig) -> float:
    """Ceiling on output weight a segment may produce for `demand`."""
    if demand.balance < -SHORTAGE_EPSILON_KG:
        shortage = abs(demand.balance)
        return max(shortage * config.overstock_factor, shortage + config.shortage_buffer_kg)
    if demand.allow_overproduction:
        return config.stock_cap_kg
    return 0.0


def segment_weight(
    strips: Iterable[Strip],
    coil_width: float,
    available_weight: float,
    demands: dict[str, DemandLine],
    config: SolverConfig,
) -> float:
    """Coil input weight for one segment, bounded by the tightest demand ceiling.

    Rounded down to the weight step; when less than the minimum remainder would
    be left the whole available weight is consumed instead.
    """
    max_input = available_weight
    for strip in strips:
        if strip.usage != Usage.PRODUCT or strip.demand_id is None:
            continue
        demand = demands.get(strip.demand_id)
        if demand is None:
            continue
        ratio = (strip.width * strip.count) / coil_width
        if ratio <= 0:
            continue
        implied = allowed_output(demand, config) / ratio
        if implied < max_input:
            max_input = implied

    step = config.weight_step_kg
    weight = math.floor(max_input / step) * step if step > 0 else floor_tenth(max_input)
    if weight < 0:
        weight = 0.0
    if available_weight - weight < config.min_remainder_kg:
        return floor_tenth(available_weight)
    return float(weight)


def simulate_depletion(
    strips: Iterable[Strip],
    weight: float,
    coil_width: float,
    demands: dict[str, DemandLine],
) -> dict[str, DemandLine]:
    """Copy of `demands` with each PRODUCT strip's assumed output added to its balance."""
    updated = dict(demands)
    for strip in strips:
        if strip.usage != Usage.PRODUCT or strip.demand_id is None:
            continue
        demand = updated.get(strip.demand_id)
        if demand is None:
            continue
        consumed = weight * (strip.width * strip.count) / coil_width
        updated[strip.demand_id] = replace(demand, balance=demand.balance + consumed)
    return updated


def _make_segment(ordinal: int, pattern: Pattern, weight: float) -> Segment:
    return Segment(
        ordinal=ordinal,
        strips=pattern.strips,
        processing_weight=weight,
        efficiency=pattern.efficiency,
        used_width=pattern.used_width,
    )


def assemble_plan(
    seed: Pattern,
    index: int,
    coil: Coil,
    candidates: list[DemandLine],
    *,
    urgent_id: str | None,
    config: SolverConfig,
    cancel: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> Plan:
    """Chain up to `config.max_segments` segments on `coil`, starting from `seed`."""
    simulated = {d.demand_id: d for d in candidates}
    remaining = float(coil.remaining_weight)
    segments: list[Segment] = []

    pattern: Pattern | None = seed
    while pattern is not None and len(segments) < config.max_segments:
        weight = segment_weight(pattern.strips, coil.width, remaining, simulated, config)
        if weight <= 0:
            break
        segments.append(_make_segment(len(segments) + 1, pattern, weight))
        remaining -= weight
        simulated = simulate_depletion(pattern.strips, weight, coil.width, simulated)

        pattern = None
        if remaining > config.min_remainder_kg and len(segments) < config.max_segments:
            nxt = solve_segment_patterns(
                coil, simulated.values(), urgent_id, config, cancel=cancel, clock=clock
            )
            if nxt:
                pattern = nxt[0]

    total = sum(s.processing_weight for s in segments)
    weighted = sum(s.efficiency * s.processing_weight for s in segments) / (total or 1)

    name = PLAN_LABELS[index] if index < len(PLAN_LABELS) else f"Plan {index + 1}"
    description = "Best overall" if index == 0 else "Alternative"
    if urgent_id is not None and seed.has_urgent:
        description += " · includes urgent order"
    dominant = simulated.get(seed.dominant_demand_id) if seed.dominant_demand_id else None
    if dominant is not None and dominant.grade == coil.grade:
        description += f" · exact grade ({dominant.grade.value})"

    return Plan(
        plan_id=uuid4().hex,
        name=name,
        description=description,
        segments=tuple(segments),
        efficiency=round(weighted, 2),
        processing_weight=round(total, 1),
        remaining_coil_weight=max(0.0, round(remaining, 1)),
    )


def generate_plans(
    coil: Coil,
    demands: Iterable[DemandLine],
    *,
    mode: str = "stock",
    urgent_demand_id: str | None = None,
    config: SolverConfig | None = None,
    cancel: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> PlanningResult:
    """Ranked multi-segment plans for `coil`.

    Only compatible demand lines that still need output are considered. An
    empty result carries a status telling "no viable demand" apart from
    "efficiency below threshold".
    """
    config = config or SolverConfig()
    mode = str(mode or "stock").strip().lower()
    if mode not in {"stock", "urgent"}:
        raise ValueError(f"unsupported mode: {mode!r}")
    if mode == "urgent" and not urgent_demand_id:
        raise ValueError("urgent mode requires an urgent demand line")
    urgent_id = urgent_demand_id if mode == "urgent" else None

    if coil.remaining_weight <= MIN_USABLE_COIL_KG:
        return PlanningResult(
            status=STATUS_COIL_EXHAUSTED,
            message=f"Coil {coil.coil_code} has only {coil.remaining_weight:g} kg left; pick another coil.",
        )

    candidates = [d for d in demands if check_compatibility(coil, d) is None and needs_production(d)]
    compatible_count = len(candidates)

    if compatible_count == 0:
        return PlanningResult(
            status=STATUS_NO_VIABLE_DEMAND,
            message=(
                "No compatible demand found. Check that demand lines are short (balance < 0) "
                "or allow overproduction, that grade, coating and surface match, and that "
                "thickness differs by no more than 0.05mm."
            ),
            compatible_count=0,
        )

    seeds = solve_segment_patterns(coil, candidates, urgent_id, config, cancel=cancel, clock=clock)
    if urgent_id is not None:
        with_urgent = [p for p in seeds if p.has_urgent]
        if with_urgent:
            seeds = with_urgent

    plans = [
        assemble_plan(
            seed, i, coil, candidates, urgent_id=urgent_id, config=config, cancel=cancel, clock=clock
        )
        for i, seed in enumerate(seeds[: config.max_seeds])
    ]
    accepted = [p for p in plans if p.efficiency >= config.efficiency_threshold]
    accepted.sort(key=lambda p: -p.efficiency)

    logger.info(
        "Coil %s: %d compatible demand line(s), %d plan(s) built, %d accepted",
        coil.coil_code,
        compatible_count,
        len(plans),
        len(accepted),
    )

    if not accepted:
        return PlanningResult(
            status=STATUS_EFFICIENCY_BELOW_THRESHOLD,
            message=(
                f"Found {compatible_count} compatible demand line(s) but no plan reached "
                f"{config.efficiency_threshold:g}% efficiency. Try a coil with a better fitting width."
            ),
            compatible_count=compatible_count,
        )

    return PlanningResult(
        status=STATUS_OK,
        plans=accepted,
        message=f"Generated {len(accepted)} plan(s) at or above {config.efficiency_threshold:g}% efficiency.",
        compatible_count=compatible_count,
    )


def pick_coil_for_demand(coils: Iterable[Coil], demand: DemandLine) -> tuple[Coil | None, str]:
    """Best stocked coil for an urgent demand line, with a short reason."""
    valid = [c for c in coils if c.remaining_weight > MIN_USABLE_COIL_KG and check_compatibility(c, demand) is None]
    if not valid:
        return None, "No compatible coil"

    scored: list[tuple[int, float, Coil, str]] = []
    for c in valid:
        remainder = c.width
        for w in (demand.spec1, demand.spec2):
            if w > 0:
                remainder = min(remainder, c.width % w)

        if remainder < 10:
            score, reason = 100, "Perfect width fit"
        elif remainder < 50:
            score, reason = 50, "High utilization fit"
        elif c.total_weight - c.remaining_weight > 100:
            score, reason = 10, "Use up tail coil first"
        else:
            score, reason = 5, "Compatible stock"

        if c.grade == demand.grade:
            score += 2
        scored.append((score, remainder, c, reason))

    scored.sort(key=lambda x: (-x[0], x[1]))
    score, remainder, coil, reason = scored[0]
    return coil, f"{reason} (remainder {remainder:.0f}mm)"
