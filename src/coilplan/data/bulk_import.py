from __future__ import annotations

import logging
import math
from datetime import date, datetime
from typing import Iterable
from uuid import uuid4

import pandas as pd

from coilplan.core.models import STRICT_MARKERS, Coil, DemandLine, ExecutionRecord, Grade, Surface, Usage
from coilplan.data.excel_io import clean_cell, coerce_float, read_pasted_text, read_table_bytes

logger = logging.getLogger(__name__)

# Positional layout of a demand (BOM shortage) sheet.
DEMAND_COLUMNS = (
    "client",
    "model",
    "material_code",
    "sheet_metal_code",
    "name",
    "grade",
    "coating_surface",
    "thickness",
    "spec1",
    "spec2",
    "quota",
    "weight",
    "pieces",
    "batch_id",
)

# Positional layout of a coil stock sheet.
COIL_COLUMNS = ("coil_code", "grade", "coating", "surface", "thickness", "width", "weight")

HISTORY_COLUMNS = (
    "record",
    "executed_at",
    "coil_code",
    "plan",
    "consumed_kg",
    "efficiency_pct",
    "segment",
    "segment_kg",
    "material_code",
    "usage",
    "width_mm",
    "count",
    "record_pieces",
    "record_std_kg",
)


def parse_grade(text: str) -> Grade:
    s = str(text or "").upper().strip()
    if "54" in s:
        return Grade.DX54D
    if "53" in s:
        return Grade.DX53D
    if "52" in s:
        return Grade.DX52D
    return Grade.DX51D


def parse_coating(text: str) -> int:
    s = str(text or "").upper().strip()
    return 180 if "180" in s else 80


def parse_surface(text: str) -> Surface:
    s = str(text or "").upper().strip()
    if "FY" in s or "钝化" in s or "PASSIV" in s:
        return Surface.FY
    return Surface.Y


def extract_note(text: str) -> str | None:
    upper = str(text or "").upper()
    for marker in STRICT_MARKERS:
        if marker in upper:
            return marker
    return None


def opening_balance(*, quota: float, weight: float, pieces: float) -> float:
    """Shortage sheets list positive quantities; balances store them negative."""
    if pieces > 0:
        whole = math.floor(pieces + 0.5)
        if quota > 0:
            return -(whole * quota)
    return -weight if weight > 0 else weight


def _cells(row: pd.Series, width: int) -> list[str]:
    values = [clean_cell(v) for v in list(row.values)]
    return values + [""] * max(0, width - len(values))


def parse_demand_frame(df: pd.DataFrame) -> list[DemandLine]:
    out: list[DemandLine] = []
    for idx, row in df.iterrows():
        cols = _cells(row, len(DEMAND_COLUMNS))
        if not cols[0] or all(not c for c in cols[1:5]):
            continue
        try:
            material_code = cols[2]
            thickness = coerce_float(cols[7]) or 0.0
            if not material_code or not thickness:
                continue

            coating_surface = cols[6]
            spec1_note = extract_note(cols[8])
            spec2_note = extract_note(cols[9])
            quota = coerce_float(cols[10]) or 0.0
            balance = opening_balance(
                quota=quota,
                weight=coerce_float(cols[11]) or 0.0,
                pieces=coerce_float(cols[12]) or 0.0,
            )
            model = cols[1]
            is_special = (
                extract_note(material_code) is not None
                or "*C" in model.upper()
                or spec1_note is not None
                or spec2_note is not None
            )
            out.append(
                DemandLine(
                    demand_id=uuid4().hex,
                    material_code=material_code,
                    name=cols[4],
                    quota=quota,
                    grade=parse_grade(cols[5]),
                    coating=parse_coating(coating_surface),
                    surface=parse_surface(coating_surface),
                    thickness=thickness,
                    spec1=coerce_float(cols[8]) or 0.0,
                    spec2=coerce_float(cols[9]) or 0.0,
                    balance=round(balance, 2),
                    spec1_note=spec1_note,
                    spec2_note=spec2_note,
                    allow_overproduction=False,
                    client=cols[0],
                    model=model,
                    sheet_metal_code=cols[3],
                    batch_id=cols[13],
                    is_special=is_special,
                )
            )
        except Exception as exc:
            logger.warning("Skipping demand row %s: %s", idx, exc)
    return out


def parse_coil_frame(df: pd.DataFrame, *, entry_date: date | None = None) -> list[Coil]:
    today = (entry_date or date.today()).isoformat()
    out: list[Coil] = []
    for idx, row in df.iterrows():
        cols = _cells(row, len(COIL_COLUMNS))
        code = cols[0]
        if not code or "卷号" in code or code.lower() in {"coil", "coil code", "coil_code"}:
            continue
        try:
            thickness = coerce_float(cols[4]) or 0.0
            width = coerce_float(cols[5]) or 0.0
            weight = coerce_float(cols[6]) or 0.0
            if thickness <= 0 or width <= 0 or weight <= 0:
                continue
            out.append(
                Coil(
                    coil_id=uuid4().hex,
                    coil_code=code,
                    grade=parse_grade(cols[1]),
                    coating=parse_coating(cols[2]),
                    surface=parse_surface(cols[3]),
                    thickness=thickness,
                    width=width,
                    total_weight=weight,
                    remaining_weight=weight,
                    entry_date=today,
                )
            )
        except Exception as exc:
            logger.warning("Skipping coil row %s: %s", idx, exc)
    return out


def parse_demand_text(text: str) -> list[DemandLine]:
    return parse_demand_frame(read_pasted_text(text))


def parse_coil_text(text: str, *, entry_date: date | None = None) -> list[Coil]:
    return parse_coil_frame(read_pasted_text(text), entry_date=entry_date)


def parse_demand_bytes(content: bytes, *, filename: str = "") -> list[DemandLine]:
    return parse_demand_frame(read_table_bytes(content, filename=filename))


def parse_coil_bytes(content: bytes, *, filename: str = "") -> list[Coil]:
    return parse_coil_frame(read_table_bytes(content, filename=filename))


def history_frame(records: Iterable[ExecutionRecord]) -> pd.DataFrame:
    """One row per strip of every execution record."""
    rows: list[dict] = []
    for rec in records:
        impacts = {i.demand_id: i for i in rec.impacts}
        for seg in rec.segments:
            for strip in seg.strips:
                impact = impacts.get(strip.demand_id) if strip.demand_id else None
                rows.append(
                    {
                        "record": rec.record_id[-6:],
                        "executed_at": rec.created_at,
                        "coil_code": rec.coil_code,
                        "plan": rec.plan_name,
                        "consumed_kg": rec.total_consumed_weight,
                        "efficiency_pct": rec.efficiency,
                        "segment": seg.ordinal,
                        "segment_kg": seg.processing_weight,
                        "material_code": strip.material_code,
                        "usage": "scrap" if strip.usage == Usage.SCRAP else "product",
                        "width_mm": strip.width,
                        "count": strip.count,
                        "record_pieces": impact.pieces if impact else "",
                        "record_std_kg": impact.weight_deducted if impact else "",
                    }
                )
    return pd.DataFrame(rows, columns=list(HISTORY_COLUMNS))


def export_history_csv(records: Iterable[ExecutionRecord]) -> bytes:
    """CSV with a BOM so spreadsheet tools pick up UTF-8."""
    df = history_frame(records)
    return df.to_csv(index=False).encode("utf-8-sig")


def export_filename(now: datetime | None = None) -> str:
    return f"slitting_history_{(now or datetime.now()).date().isoformat()}.csv"
