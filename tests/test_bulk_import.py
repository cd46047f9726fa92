from __future__ import annotations

import io
from datetime import date
from pathlib import Path

import pandas as pd
import pytest

from coilplan.core.models import Grade, Surface
from coilplan.data.bulk_import import (
    opening_balance,
    parse_coating,
    parse_coil_text,
    parse_demand_text,
    parse_grade,
    parse_surface,
)
from coilplan.data.db import Db
from coilplan.data.excel_io import clean_cell, coerce_float
from coilplan.data.repository import Repository

DEMAND_ROWS = "\n".join(
    [
        "Client\tModel\tMaterial\tSheet metal\tName\tGrade\tCoating\tThickness\tSpec 1\tSpec 2\tQuota\tWeight\tPieces\tBatch",
        "ACME\tM-100\tMAT-1\tSM-1\tSide panel\tDX51D\tZ80 FY\t0.8\t312*C\t300\t10\t1000\t100\tB1",
        "ACME\tM-100\tMAT-2\tSM-2\tBack panel\tDX53D+Z\tZ180\t1.0\t415\t\t12.5\t500\t\tB1",
    ]
)

COIL_ROWS = "\n".join(
    [
        "卷号\t牌号\t镀层\t表面\t厚度\t宽度\t重量",
        "C-01\tDX51D\tZ80\tFY\t0.8\t1250\t5000",
        "C-02\tDX54D\t180\t钝化\t1.0\t1300\t4200.5",
        "C-03\tDX51D\tZ80\tY\t0.8\t0\t100",
    ]
)


def make_excel_bytes(rows: list[list]) -> bytes:
    bio = io.BytesIO()
    pd.DataFrame(rows).to_excel(bio, index=False, header=False)
    bio.seek(0)
    return bio.read()


@pytest.fixture()
def repo(tmp_path) -> Repository:
    db = Db(Path(tmp_path) / "test.db")
    db.ensure_schema()
    return Repository(db)


def test_parse_helpers():
    assert parse_grade("dx53d+z") == Grade.DX53D
    assert parse_grade("") == Grade.DX51D
    assert parse_coating("Z180") == 180
    assert parse_coating("80") == 80
    assert parse_surface("FY") == Surface.FY
    assert parse_surface("钝化") == Surface.FY
    assert parse_surface("oiled") == Surface.Y


def test_cell_cleanup():
    assert clean_cell("宽度：1250") == "1250"
    assert clean_cell(float("nan")) == ""
    assert coerce_float("0.8mm") == 0.8
    assert coerce_float("1,250") == 1250.0
    assert coerce_float("") is None


def test_opening_balance_prefers_pieces():
    assert opening_balance(quota=10.0, weight=999.0, pieces=100) == -1000.0
    assert opening_balance(quota=12.5, weight=500.0, pieces=0) == -500.0
    assert opening_balance(quota=0.0, weight=500.0, pieces=10) == -500.0


def test_parse_demand_text():
    lines = parse_demand_text(DEMAND_ROWS)
    assert [d.material_code for d in lines] == ["MAT-1", "MAT-2"]

    first, second = lines
    assert first.balance == -1000.0
    assert first.spec1 == 312.0 and first.spec1_note == "*C"
    assert first.spec2 == 300.0 and first.spec2_note is None
    assert first.is_special
    assert first.surface == Surface.FY and first.coating == 80
    assert first.client == "ACME" and first.batch_id == "B1"

    assert second.grade == Grade.DX53D
    assert second.coating == 180
    assert second.balance == -500.0
    assert second.spec2 == 0.0
    assert not second.is_special


def test_parse_coil_text_skips_header_and_invalid_rows():
    coils = parse_coil_text(COIL_ROWS, entry_date=date(2024, 5, 1))
    assert [c.coil_code for c in coils] == ["C-01", "C-02"]
    c2 = coils[1]
    assert c2.grade == Grade.DX54D
    assert c2.coating == 180
    assert c2.surface == Surface.FY
    assert c2.remaining_weight == c2.total_weight == 4200.5
    assert c2.entry_date == "2024-05-01"


def test_import_text_persists_rows(repo):
    assert repo.import_text(kind="coils", text=COIL_ROWS) == 2
    assert repo.import_text(kind="demand", text=DEMAND_ROWS) == 2
    assert len(repo.list_coils()) == 2
    assert {d.material_code for d in repo.list_demand_lines()} == {"MAT-1", "MAT-2"}


def test_import_xlsx_upload(repo):
    content = make_excel_bytes(
        [
            ["coil_code", "grade", "coating", "surface", "thickness", "width", "weight"],
            ["C-10", "DX52D", "Z80", "FY", "0.8", "1250", "3000"],
        ]
    )
    assert repo.import_bytes(kind="coils", content=content, filename="stock.xlsx") == 1
    (coil,) = repo.list_coils()
    assert coil.coil_code == "C-10"
    assert coil.grade == Grade.DX52D


def test_import_rejects_unknown_kind(repo):
    with pytest.raises(ValueError):
        repo.import_text(kind="orders", text="x")
