from __future__ import annotations

from pathlib import Path

import pytest

from coilplan.core.models import Coil, DemandLine, Grade, SolverConfig, Surface
from coilplan.data.db import Db
from coilplan.data.repository import Repository


@pytest.fixture()
def repo(tmp_path) -> Repository:
    db = Db(Path(tmp_path) / "test.db")
    db.ensure_schema()
    return Repository(db)


def test_defaults_without_overrides(repo):
    assert repo.get_solver_config() == SolverConfig()


def test_solver_overrides_are_typed(repo):
    repo.set_config(key="solver_max_strips", value="6")
    repo.set_config(key="solver_efficiency_threshold", value="95.5")
    cfg = repo.get_solver_config()
    assert cfg.max_strips == 6
    assert isinstance(cfg.max_strips, int)
    assert cfg.efficiency_threshold == 95.5
    assert cfg.max_segments == SolverConfig().max_segments


def test_set_config_upserts(repo):
    repo.set_config(key="site_name", value="Line 2")
    repo.set_config(key="site_name", value="Line 3")
    assert repo.get_config(key="site_name") == "Line 3"
    assert repo.get_config(key="missing", default="x") == "x"


@pytest.mark.parametrize(
    "key, value",
    [
        ("solver_unknown", "1"),
        ("solver_max_strips", "many"),
        ("solver_time_budget_s", "-1"),
        ("solver_weight_step_kg", "0"),
        ("solver_max_strips", "0"),
        ("solver_max_segments", "0"),
        ("", "1"),
    ],
)
def test_invalid_config_is_rejected(repo, key, value):
    with pytest.raises(ValueError):
        repo.set_config(key=key, value=value)


def test_bad_stored_value_falls_back_to_default(repo):
    with repo.db.connect() as con:
        con.execute("INSERT INTO app_config(config_key, config_value) VALUES ('solver_max_seeds', 'lots')")
    assert repo.get_solver_config().max_seeds == SolverConfig().max_seeds


def test_stored_zero_step_is_ignored(repo):
    with repo.db.connect() as con:
        con.execute("INSERT INTO app_config(config_key, config_value) VALUES ('solver_weight_step_kg', '0')")
    assert repo.get_solver_config().weight_step_kg == SolverConfig().weight_step_kg


def test_overrides_reach_the_planner(repo):
    repo.add_coils(
        [
            Coil(
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
        ]
    )
    repo.add_demand_lines(
        [
            DemandLine(
                demand_id="d1",
                material_code="MAT-1",
                name="Panel",
                quota=10.0,
                grade=Grade.DX51D,
                coating=80,
                surface=Surface.FY,
                thickness=0.8,
                spec1=700.0,
                spec2=0.0,
                balance=-1000.0,
            )
        ]
    )
    assert repo.generate_plans_for(coil_id="c1").status == "efficiency_below_threshold"

    repo.set_config(key="solver_efficiency_threshold", value="50")
    assert repo.generate_plans_for(coil_id="c1").ok
