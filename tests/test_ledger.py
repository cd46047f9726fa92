from __future__ import annotations

import pytest

from coilplan.core.ledger import (
    apply_impact,
    compute_impacts,
    consume_coil,
    physical_output,
    plan_details,
    restore_coil,
    revert_impact,
)
from coilplan.core.models import Coil, DemandLine, Grade, Plan, Segment, Strip, Surface, Usage


def _coil(**kw) -> Coil:
    base = dict(
        coil_id="c1",
        coil_code="C-01",
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


def _demand(**kw) -> DemandLine:
    base = dict(
        demand_id="d1",
        material_code="MAT-1",
        name="Side panel",
        quota=10.0,
        grade=Grade.DX51D,
        coating=80,
        surface=Surface.FY,
        thickness=0.8,
        spec1=312.0,
        spec2=0.0,
        balance=-1000.0,
        spec1_note="*C",
        client="ACME",
    )
    base.update(kw)
    return DemandLine(**base)


def _plan(weight: float = 5000.0) -> Plan:
    seg = Segment(
        ordinal=1,
        strips=(
            Strip("d1", "MAT-1", 312.0, 4),
            Strip(None, "TRIM", 2.0, 1, Usage.SCRAP),
        ),
        processing_weight=weight,
        efficiency=99.84,
        used_width=1248.0,
    )
    return Plan(
        plan_id="p1",
        name="Plan A",
        description="Best overall",
        segments=(seg,),
        efficiency=99.84,
        processing_weight=weight,
        remaining_coil_weight=0.0,
    )


def test_physical_output_ignores_scrap():
    out = physical_output(_plan(), 1250.0)
    assert out == {"d1": pytest.approx(4992.0)}


def test_impact_books_whole_pieces_at_standard_weight():
    (impact,) = compute_impacts(_plan(), _coil(), [_demand()])
    assert impact.pieces == 499
    assert impact.weight_deducted == 4990.0
    assert apply_impact(_demand(), impact).balance == 3990.0


def test_thicker_coil_yields_fewer_pieces():
    (impact,) = compute_impacts(_plan(), _coil(thickness=1.0), [_demand()])
    assert impact.pieces == 399
    assert impact.weight_deducted == 3990.0


def test_zero_quota_books_raw_weight_without_pieces():
    (impact,) = compute_impacts(_plan(), _coil(), [_demand(quota=0.0)])
    assert impact.pieces == 0
    assert impact.weight_deducted == pytest.approx(4992.0)


def test_unrelated_demand_gets_no_impact():
    assert compute_impacts(_plan(), _coil(), [_demand(demand_id="other")]) == []


def test_apply_then_revert_restores_balance():
    demand = _demand(balance=-1234.56)
    (impact,) = compute_impacts(_plan(), _coil(), [demand])
    assert revert_impact(apply_impact(demand, impact), impact).balance == -1234.56


def test_consume_and_restore_coil():
    coil = _coil(remaining_weight=5000.0)
    used = consume_coil(coil, 4999.95, used_at="2024-05-02T10:00:00")
    assert used.remaining_weight == 0.0
    assert used.last_used_at == "2024-05-02T10:00:00"

    partly = consume_coil(coil, 1200.0, used_at="2024-05-02T10:00:00")
    assert partly.remaining_weight == 3800.0
    assert restore_coil(partly, 1200.0).remaining_weight == 5000.0
    # never above the original weight
    assert restore_coil(partly, 9999.0).remaining_weight == 5000.0


def test_plan_details_match_execution_arithmetic():
    rows = plan_details(_plan(), _coil(), [_demand()])
    product, scrap = rows
    assert product["width_label"] == "312*C"
    assert product["total_weight"] == 4992.0
    assert product["weight_per_strip"] == 1248.0
    assert product["expected_pieces"] == 499
    assert product["balance_before"] == -1000.0
    assert product["balance_after"] == 3990.0
    assert product["client"] == "ACME"

    assert scrap["usage"] == "SCRAP"
    assert scrap["demand_id"] is None
    assert scrap["expected_pieces"] == 0
    assert scrap["balance_after"] is None
