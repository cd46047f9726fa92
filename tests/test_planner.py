from __future__ import annotations

import pytest

from coilplan.core.models import Coil, DemandLine, Grade, SolverConfig, Strip, Surface, Usage
from coilplan.core.planner import (
    STATUS_COIL_EXHAUSTED,
    STATUS_EFFICIENCY_BELOW_THRESHOLD,
    STATUS_NO_VIABLE_DEMAND,
    STATUS_OK,
    allowed_output,
    generate_plans,
    pick_coil_for_demand,
    segment_weight,
)


def _coil(coil_id: str = "c1", **kw) -> Coil:
    base = dict(
        coil_id=coil_id,
        coil_code=f"C-{coil_id}",
        grade=Grade.DX51D,
        coating=80,
        surface=Surface.FY,
        thickness=0.8,
        width=1250.0,
        total_weight=5000.0,
        remaining_weight=5000.0,
        entry_date="2024-05-01",
    )
    base.update(kw)
    return Coil(**base)


def _demand(demand_id: str = "d1", **kw) -> DemandLine:
    base = dict(
        demand_id=demand_id,
        material_code=f"MAT-{demand_id}",
        name="Part",
        quota=10.0,
        grade=Grade.DX51D,
        coating=80,
        surface=Surface.FY,
        thickness=0.8,
        spec1=312.0,
        spec2=0.0,
        balance=-1000.0,
    )
    base.update(kw)
    return DemandLine(**base)


def test_allowed_output_for_shortage_and_stock_build():
    config = SolverConfig()
    assert allowed_output(_demand(balance=-1000.0), config) == pytest.approx(1200.0)
    assert allowed_output(_demand(balance=-5000.0), config) == pytest.approx(5500.0)
    assert allowed_output(_demand(balance=0.0, allow_overproduction=True), config) == 1500.0
    assert allowed_output(_demand(balance=10.0), config) == 0.0


def test_segment_weight_is_bounded_by_tightest_demand():
    demands = {"d1": _demand()}
    strips = [Strip("d1", "MAT-d1", 312.0, 4), Strip(None, "TRIM", 2.0, 1, Usage.SCRAP)]
    assert segment_weight(strips, 1250.0, 5000.0, demands, SolverConfig()) == 1200.0


def test_segment_weight_takes_everything_when_remainder_is_tiny():
    demands = {"d1": _demand()}
    strips = [Strip("d1", "MAT-d1", 312.0, 4)]
    assert segment_weight(strips, 1250.0, 1230.0, demands, SolverConfig()) == 1230.0


def test_segment_weight_without_step_floors_to_a_tenth():
    demands = {"d1": _demand()}
    strips = [Strip("d1", "MAT-d1", 312.0, 4)]
    assert segment_weight(strips, 1250.0, 5000.0, demands, SolverConfig(weight_step_kg=0.0)) == 1201.9


def test_single_demand_plan():
    result = generate_plans(_coil(), [_demand()])
    assert result.status == STATUS_OK
    assert result.compatible_count == 1
    plan = result.plans[0]
    assert plan.name == "Plan A"
    assert plan.efficiency == 99.84
    assert plan.processing_weight == 1200.0
    assert plan.remaining_coil_weight == 3800.0
    assert len(plan.segments) == 1


def test_plans_are_legal_and_sorted():
    coil = _coil()
    demands = [
        _demand("a", spec1=312.0, spec2=298.0, balance=-3000.0),
        _demand("b", spec1=415.0, balance=-800.0),
        _demand("c", spec1=180.0, balance=-2500.0),
    ]
    config = SolverConfig()
    result = generate_plans(coil, demands, config=config)
    assert result.ok
    effs = [p.efficiency for p in result.plans]
    assert effs == sorted(effs, reverse=True)
    for plan in result.plans:
        assert plan.efficiency >= config.efficiency_threshold
        assert 1 <= len(plan.segments) <= config.max_segments
        assert plan.processing_weight <= coil.remaining_weight + 1e-6
        for seg in plan.segments:
            product = sum(s.width * s.count for s in seg.strips if s.usage == Usage.PRODUCT)
            assert product <= coil.width + 1e-6
            assert sum(s.count for s in seg.strips if s.usage == Usage.PRODUCT) <= config.max_strips


def test_incompatible_demand_means_no_viable_demand():
    result = generate_plans(_coil(grade=Grade.DX51D), [_demand(grade=Grade.DX53D)])
    assert result.status == STATUS_NO_VIABLE_DEMAND
    assert result.plans == []
    assert result.compatible_count == 0


def test_satisfied_demand_means_no_viable_demand():
    result = generate_plans(_coil(), [_demand(balance=0.0)])
    assert result.status == STATUS_NO_VIABLE_DEMAND


def test_poor_fit_is_reported_as_below_threshold():
    result = generate_plans(_coil(), [_demand(spec1=700.0)])
    assert result.status == STATUS_EFFICIENCY_BELOW_THRESHOLD
    assert result.compatible_count == 1
    assert result.plans == []


def test_urgent_mode_puts_urgent_line_in_first_segment():
    demands = [_demand("a", balance=-1000.0), _demand("u", spec1=400.0, balance=-500.0)]
    result = generate_plans(_coil(), demands, mode="urgent", urgent_demand_id="u")
    assert result.ok
    first = result.plans[0]
    assert any(s.demand_id == "u" for s in first.segments[0].strips)
    assert "urgent" in first.description


def test_urgent_mode_requires_a_demand_line():
    with pytest.raises(ValueError):
        generate_plans(_coil(), [_demand()], mode="urgent")
    with pytest.raises(ValueError):
        generate_plans(_coil(), [_demand()], mode="bogus")


def test_overproduction_allows_stock_build():
    result = generate_plans(_coil(), [_demand(balance=0.0, allow_overproduction=True)])
    assert result.ok
    # the stock cap bounds each segment, not the plan
    assert result.plans[0].segments[0].processing_weight == 1500.0


def test_pick_coil_prefers_exact_width_fit():
    coils = [_coil("wide", width=1300.0), _coil("exact", width=1250.0), _coil("empty", remaining_weight=5.0)]
    coil, reason = pick_coil_for_demand(coils, _demand())
    assert coil is not None and coil.coil_id == "exact"
    assert reason.startswith("Perfect width fit")


def test_pick_coil_without_compatible_stock():
    coil, reason = pick_coil_for_demand([_coil(coating=180)], _demand())
    assert coil is None
    assert reason == "No compatible coil"


def test_plan_never_books_more_than_an_unrounded_coil_holds():
    coil = _coil(total_weight=5000.37, remaining_weight=5000.37)
    result = generate_plans(coil, [_demand(balance=-5000.0)])
    assert result.ok
    plan = result.plans[0]
    assert plan.processing_weight <= coil.remaining_weight
    assert plan.processing_weight == 5000.3
    assert [s.processing_weight for s in plan.segments] == [5000.3]


def test_exhausted_coil_is_reported_as_such():
    result = generate_plans(_coil(remaining_weight=0.0), [_demand()])
    assert result.status == STATUS_COIL_EXHAUSTED
    assert result.plans == []
    assert "C-c1" in result.message
