from __future__ import annotations

import pytest

from coilplan.core.compat import (
    adjusted_quota,
    check_compatibility,
    is_grade_compatible,
    needs_production,
    pieces_from_weight,
    shortage_pieces,
    width_options,
)
from coilplan.core.models import Coil, DemandLine, Grade, Surface


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
    )
    base.update(kw)
    return DemandLine(**base)


def test_higher_grade_serves_lower_but_never_the_reverse():
    grades = [Grade.DX51D, Grade.DX52D, Grade.DX53D, Grade.DX54D]
    for i, coil_grade in enumerate(grades):
        for j, required in enumerate(grades):
            assert is_grade_compatible(coil_grade, required) is (i >= j)


def test_compatible_coil_has_no_reason():
    assert check_compatibility(_coil(), _demand()) is None
    assert check_compatibility(_coil(grade=Grade.DX54D), _demand(grade=Grade.DX52D)) is None


@pytest.mark.parametrize(
    "coil_kw, demand_kw, word",
    [
        ({"grade": Grade.DX51D}, {"grade": Grade.DX53D}, "Grade"),
        ({"coating": 180}, {"coating": 80}, "Coating"),
        ({"surface": Surface.Y}, {"surface": Surface.FY}, "Surface"),
        ({"thickness": 0.8}, {"thickness": 0.9}, "Thickness"),
    ],
)
def test_incompatibility_reports_the_failing_attribute(coil_kw, demand_kw, word):
    reason = check_compatibility(_coil(**coil_kw), _demand(**demand_kw))
    assert reason is not None
    assert word in reason


def test_thickness_tolerance_boundary():
    assert check_compatibility(_coil(thickness=0.8), _demand(thickness=0.85)) is None
    assert check_compatibility(_coil(thickness=0.85), _demand(thickness=0.8)) is None
    assert check_compatibility(_coil(thickness=0.8), _demand(thickness=0.851)) is not None


def test_adjusted_quota_scales_with_thickness():
    assert adjusted_quota(10.0, 0.8, 1.0) == pytest.approx(12.5)
    assert adjusted_quota(10.0, 0.8, 0.8) == pytest.approx(10.0)
    assert adjusted_quota(10.0, 0.0, 1.0) == 0.0


def test_pieces_from_weight_floors_and_guards_zero_quota():
    assert pieces_from_weight(4992.0, 10.0) == 499
    assert pieces_from_weight(4992.0, 12.5) == 399
    assert pieces_from_weight(30.0, 10.0) == 3
    assert pieces_from_weight(100.0, 0.0) == 0


def test_needs_production():
    assert needs_production(_demand(balance=-1000.0))
    assert not needs_production(_demand(balance=-0.05))
    assert not needs_production(_demand(balance=0.0))
    assert needs_production(_demand(balance=50.0, allow_overproduction=True))


def test_shortage_pieces_is_signed():
    assert shortage_pieces(_demand(balance=-1000.0)) == -100
    assert shortage_pieces(_demand(balance=55.0)) == 5


def test_width_options_keep_both_widths_without_markers():
    d = _demand(spec1=312.0, spec2=300.0)
    assert width_options(d, 1250.0) == [312.0, 300.0]


def test_width_options_strict_marker_suppresses_plain_width():
    d = _demand(spec1=312.0, spec1_note="*C", spec2=300.0)
    assert width_options(d, 1250.0) == [312.0]

    d2 = _demand(spec1=312.0, spec2=300.0, spec2_note="*L")
    assert width_options(d2, 1250.0) == [300.0]


def test_width_options_drop_widths_wider_than_coil():
    d = _demand(spec1=1300.0, spec2=600.0)
    assert width_options(d, 1250.0) == [600.0]
    assert width_options(_demand(spec1=0.0, spec2=0.0), 1250.0) == []
