from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Callable, Iterable

from coilplan.core.compat import needs_production, width_options
from coilplan.core.models import Coil, DemandLine, SolverConfig, Strip, Usage

logger = logging.getLogger(__name__)

SCRAP_CODE = "TRIM"

# Stop deepening once a combination uses this share of the coil width.
FULL_UTILIZATION = 0.999

# Efficiencies closer than this (percentage points) rank as equal.
EFFICIENCY_TIE_PP = 0.1

_EXHAUSTIVE_URGENT_SCORE = 1_000_000.0

_WIDTH_EPSILON = 1e-6


@dataclass(frozen=True)
class WidthOption:
    width: float
    demand: DemandLine
    score: float
    is_urgent: bool


@dataclass(frozen=True)
class Pattern:
    """One candidate cutting pattern for a single segment."""

    strips: tuple[Strip, ...]
    efficiency: float  # percent of coil width
    used_width: float
    score: float
    dominant_demand_id: str | None = None
    has_urgent: bool = False

    @property
    def product_strip_count(self) -> int:
        return sum(s.count for s in self.strips if s.usage == Usage.PRODUCT)


@dataclass(frozen=True)
class SearchOutcome:
    widths: tuple[float, ...]
    used_width: float
    timed_out: bool
    expansions: int


def eligible_demands(demands: Iterable[DemandLine], coil_width: float) -> list[DemandLine]:
    """Demand lines that still need output and have at least one width fitting the coil."""
    out: list[DemandLine] = []
    for d in demands:
        if not needs_production(d):
            continue
        fits1 = 0 < d.spec1 <= coil_width
        fits2 = 0 < d.spec2 <= coil_width
        if fits1 or fits2:
            out.append(d)
    return out


def score_demand(demand: DemandLine, coil: Coil, urgent_id: str | None, config: SolverConfig) -> float:
    score = abs(demand.balance) if demand.balance < 0 else 1.0
    if urgent_id is not None and demand.demand_id == urgent_id:
        score += config.urgent_bonus
    # Keep high grade coils for exact-grade demand when there is some.
    if demand.grade == coil.grade:
        score += config.grade_match_bonus
    return score


def build_width_options(
    coil: Coil,
    demands: Iterable[DemandLine],
    urgent_id: str | None,
    config: SolverConfig,
) -> list[WidthOption]:
    """Expand demand lines into width options ordered by score, then width (both desc)."""
    options: list[WidthOption] = []
    for d in eligible_demands(demands, coil.width):
        score = score_demand(d, coil, urgent_id, config)
        is_urgent = urgent_id is not None and d.demand_id == urgent_id
        for w in width_options(d, coil.width):
            options.append(WidthOption(width=w, demand=d, score=score, is_urgent=is_urgent))
    options.sort(key=lambda o: (-o.score, -o.width))
    return options


def consolidate_strips(strips: Iterable[Strip]) -> tuple[Strip, ...]:
    """Merge strips sharing (demand, width, usage), keeping first-seen order."""
    merged: dict[tuple, Strip] = {}
    for s in strips:
        key = (s.demand_id, s.width, s.usage)
        prev = merged.get(key)
        if prev is None:
            merged[key] = s
        else:
            merged[key] = Strip(
                demand_id=prev.demand_id,
                material_code=prev.material_code,
                width=prev.width,
                count=prev.count + s.count,
                usage=prev.usage,
            )
    return tuple(merged.values())


def pattern_signature(strips: Iterable[Strip]) -> str:
    parts = sorted(f"{s.demand_id}-{s.width:g}-{s.count}" for s in strips if s.usage == Usage.PRODUCT)
    return "|".join(parts)


def _finish(
    strips: list[Strip],
    *,
    coil_width: float,
    remainder: float,
    score: float,
    urgent_id: str | None,
    dominant_demand_id: str | None,
) -> Pattern:
    if remainder > _WIDTH_EPSILON:
        strips.append(
            Strip(demand_id=None, material_code=SCRAP_CODE, width=round(remainder, 1), count=1, usage=Usage.SCRAP)
        )
    consolidated = consolidate_strips(strips)
    used = coil_width - max(remainder, 0.0)
    has_urgent = urgent_id is not None and any(s.demand_id == urgent_id for s in consolidated)
    return Pattern(
        strips=consolidated,
        efficiency=round(used / coil_width * 100.0, 2),
        used_width=used,
        score=score,
        dominant_demand_id=dominant_demand_id,
        has_urgent=has_urgent,
    )


def greedy_patterns(
    options: list[WidthOption],
    coil_width: float,
    urgent_id: str | None,
    config: SolverConfig,
) -> list[Pattern]:
    """Lead with each top option at its maximum repeat, then fill the rest greedily."""
    results: list[Pattern] = []
    seen: set[str] = set()

    for opt in options[: config.greedy_top_n]:
        count = min(math.floor(coil_width / opt.width), config.max_strips)
        if count <= 0:
            continue

        strips = [Strip(opt.demand.demand_id, opt.demand.material_code, opt.width, count, Usage.PRODUCT)]
        remainder = coil_width - count * opt.width
        current = count

        for filler in options:
            if current >= config.max_strips:
                break
            if filler.width <= remainder + _WIDTH_EPSILON:
                take = min(math.floor((remainder + _WIDTH_EPSILON) / filler.width), config.max_strips - current)
                if take > 0:
                    strips.append(
                        Strip(filler.demand.demand_id, filler.demand.material_code, filler.width, take, Usage.PRODUCT)
                    )
                    remainder -= take * filler.width
                    current += take

        pattern = _finish(
            strips,
            coil_width=coil_width,
            remainder=remainder,
            score=opt.score,
            urgent_id=urgent_id,
            dominant_demand_id=opt.demand.demand_id,
        )
        sig = pattern_signature(pattern.strips)
        if sig in seen:
            continue
        seen.add(sig)
        results.append(pattern)

    return results


def exhaustive_search(
    widths: Iterable[float],
    coil_width: float,
    *,
    max_strips: int,
    time_budget_s: float,
    cancel: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> SearchOutcome:
    """Bounded depth-first search for the width multiset that fills the coil best.

    Each width may repeat. The search runs on an explicit stack in the same
    order as the plain recursive version, prunes branches that cannot beat the
    incumbent and stops at the deadline or when `cancel` is set, returning the
    best combination found so far.
    """
    ordered = sorted({float(w) for w in widths if 0 < w <= coil_width}, reverse=True)
    best: tuple[float, ...] = ()
    best_used = 0.0
    expansions = 0
    timed_out = False

    if not ordered:
        return SearchOutcome(widths=best, used_width=best_used, timed_out=False, expansions=0)

    deadline = clock() + time_budget_s
    stack: list[tuple[float, tuple[float, ...], int]] = [(0.0, (), 0)]

    while stack:
        if cancel is not None and cancel.is_set():
            timed_out = True
            break
        if clock() > deadline:
            timed_out = True
            break

        used, combo, start = stack.pop()
        expansions += 1

        if used > best_used:
            best_used = used
            best = combo

        if len(combo) >= max_strips or used / coil_width >= FULL_UTILIZATION:
            continue

        slots = max_strips - len(combo)
        children: list[tuple[float, tuple[float, ...], int]] = []
        for i in range(start, len(ordered)):
            w = ordered[i]
            # widths are descending: no later branch can reach a higher bound
            if min(coil_width, used + slots * w) <= best_used:
                break
            if used + w <= coil_width + _WIDTH_EPSILON:
                children.append((used + w, combo + (w,), i))
        stack.extend(reversed(children))

    if timed_out:
        logger.info(
            "Exhaustive search stopped after %d expansions; keeping best %.1f/%.1f mm",
            expansions,
            best_used,
            coil_width,
        )

    return SearchOutcome(widths=best, used_width=best_used, timed_out=timed_out, expansions=expansions)


def exhaustive_pattern(
    options: list[WidthOption],
    coil_width: float,
    urgent_id: str | None,
    config: SolverConfig,
    *,
    cancel: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> Pattern | None:
    by_width: dict[float, WidthOption] = {}
    for opt in options:
        # options arrive score-desc, so the first seen per width is the best owner
        by_width.setdefault(opt.width, opt)

    outcome = exhaustive_search(
        by_width.keys(),
        coil_width,
        max_strips=config.max_strips,
        time_budget_s=config.time_budget_s,
        cancel=cancel,
        clock=clock,
    )
    if not outcome.widths:
        return None

    strips: list[Strip] = []
    for w in outcome.widths:
        owner = by_width[w]
        strips.append(Strip(owner.demand.demand_id, owner.demand.material_code, w, 1, Usage.PRODUCT))

    pattern = _finish(
        strips,
        coil_width=coil_width,
        remainder=coil_width - outcome.used_width,
        score=0.0,
        urgent_id=urgent_id,
        dominant_demand_id=None,
    )
    if pattern.has_urgent:
        pattern = Pattern(
            strips=pattern.strips,
            efficiency=pattern.efficiency,
            used_width=pattern.used_width,
            score=_EXHAUSTIVE_URGENT_SCORE,
            dominant_demand_id=None,
            has_urgent=True,
        )
    return pattern


def rank_patterns(patterns: Iterable[Pattern], urgent_id: str | None) -> list[Pattern]:
    """Urgent-containing first (when requested), then efficiency, then score."""

    def _compare(a: Pattern, b: Pattern) -> int:
        if urgent_id is not None and a.has_urgent != b.has_urgent:
            return -1 if a.has_urgent else 1
        if abs(b.efficiency - a.efficiency) > EFFICIENCY_TIE_PP:
            return -1 if a.efficiency > b.efficiency else 1
        if a.score != b.score:
            return -1 if a.score > b.score else 1
        return 0

    return sorted(patterns, key=cmp_to_key(_compare))


def merge_patterns(*groups: Iterable[Pattern]) -> list[Pattern]:
    seen: set[str] = set()
    merged: list[Pattern] = []
    for group in groups:
        for p in group:
            sig = pattern_signature(p.strips)
            if sig in seen:
                continue
            seen.add(sig)
            merged.append(p)
    return merged


def solve_segment_patterns(
    coil: Coil,
    demands: Iterable[DemandLine],
    urgent_id: str | None = None,
    config: SolverConfig | None = None,
    *,
    cancel: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> list[Pattern]:
    """Ranked single-segment cutting patterns for `coil` against `demands`.

    `demands` are assumed compatible with the coil; lines that no longer need
    output are skipped here.
    """
    config = config or SolverConfig()
    options = build_width_options(coil, demands, urgent_id, config)
    if not options:
        return []

    greedy = greedy_patterns(options, coil.width, urgent_id, config)
    best = exhaustive_pattern(options, coil.width, urgent_id, config, cancel=cancel, clock=clock)
    merged = merge_patterns(greedy, [best] if best is not None else [])
    return rank_patterns(merged, urgent_id)
