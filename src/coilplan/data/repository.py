from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, fields
from datetime import datetime
from typing import Any, Iterable
from uuid import uuid4

from coilplan.core.ledger import (
    LedgerError,
    apply_impact,
    compute_impacts,
    consume_coil,
    plan_details,
    restore_coil,
    revert_impact,
)
from coilplan.core.models import (
    AuditEntry,
    Coil,
    DemandLine,
    ExecutionRecord,
    Grade,
    Impact,
    Plan,
    PlanningResult,
    Segment,
    SolverConfig,
    Strip,
    Surface,
    Usage,
)
from coilplan.core.planner import STATUS_NO_VIABLE_DEMAND, generate_plans, pick_coil_for_demand
from coilplan.data import bulk_import
from coilplan.data.db import Db

logger = logging.getLogger(__name__)

SOLVER_CONFIG_PREFIX = "solver_"

# Zero would stall the planner or divide by zero.
POSITIVE_SOLVER_SETTINGS = frozenset({"weight_step_kg", "max_strips", "max_segments", "max_seeds"})


def _coil_from_row(row) -> Coil:
    return Coil(
        coil_id=row["coil_id"],
        coil_code=row["coil_code"],
        grade=Grade(row["grade"]),
        coating=int(row["coating"]),
        surface=Surface(row["surface"]),
        thickness=float(row["thickness"]),
        width=float(row["width"]),
        total_weight=float(row["total_weight"]),
        remaining_weight=float(row["remaining_weight"]),
        entry_date=row["entry_date"],
        last_used_at=row["last_used_at"],
    )


def _demand_from_row(row) -> DemandLine:
    return DemandLine(
        demand_id=row["demand_id"],
        material_code=row["material_code"],
        name=row["name"],
        quota=float(row["quota"]),
        grade=Grade(row["grade"]),
        coating=int(row["coating"]),
        surface=Surface(row["surface"]),
        thickness=float(row["thickness"]),
        spec1=float(row["spec1"]),
        spec2=float(row["spec2"]),
        balance=float(row["balance"]),
        spec1_note=row["spec1_note"],
        spec2_note=row["spec2_note"],
        allow_overproduction=bool(row["allow_overproduction"]),
        client=row["client"],
        model=row["model"],
        sheet_metal_code=row["sheet_metal_code"],
        batch_id=row["batch_id"],
        is_special=bool(row["is_special"]),
    )


def segments_to_json(segments: Iterable[Segment]) -> str:
    payload = []
    for seg in segments:
        d = asdict(seg)
        d["strips"] = [{**asdict(s), "usage": s.usage.value} for s in seg.strips]
        payload.append(d)
    return json.dumps(payload)


def segments_from_json(raw: str) -> tuple[Segment, ...]:
    out: list[Segment] = []
    for d in json.loads(raw or "[]"):
        strips = tuple(
            Strip(
                demand_id=s.get("demand_id"),
                material_code=s.get("material_code") or "",
                width=float(s["width"]),
                count=int(s["count"]),
                usage=Usage(s.get("usage") or "PRODUCT"),
            )
            for s in d.get("strips") or []
        )
        out.append(
            Segment(
                ordinal=int(d["ordinal"]),
                strips=strips,
                processing_weight=float(d["processing_weight"]),
                efficiency=float(d["efficiency"]),
                used_width=float(d.get("used_width") or 0.0),
            )
        )
    return tuple(out)


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


class Repository:
    def __init__(self, db: Db):
        self.db = db
        # One execute/revoke at a time; sqlite serializes writers across processes.
        self._ledger_lock = threading.RLock()

    # ---------------------------------------------------------------- audit

    def log_audit(self, category: str, message: str, details: str | None = None) -> None:
        """Record a business event in the audit log."""
        try:
            with self.db.connect() as con:
                self._insert_audit(con, category, message, details)
        except Exception:
            logger.exception("Failed to write audit log")

    @staticmethod
    def _insert_audit(con, category: str, message: str, details: str | None = None) -> None:
        con.execute(
            "INSERT INTO audit_log (category, message, details) VALUES (?, ?, ?)",
            (category, message, details),
        )

    def get_recent_audit_entries(self, limit: int = 100) -> list[AuditEntry]:
        with self.db.connect() as con:
            rows = con.execute("SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [
                AuditEntry(
                    id=row["id"],
                    timestamp=row["timestamp"],
                    category=row["category"],
                    message=row["message"],
                    details=row["details"],
                )
                for row in rows
            ]

    # --------------------------------------------------------------- config

    def get_config(self, *, key: str, default: str | None = None) -> str | None:
        with self.db.connect() as con:
            row = con.execute("SELECT config_value FROM app_config WHERE config_key = ?", (key,)).fetchone()
        return row["config_value"] if row else default

    def set_config(self, *, key: str, value: str) -> None:
        key = str(key or "").strip()
        if not key:
            raise ValueError("config key is empty")
        if key.startswith(SOLVER_CONFIG_PREFIX):
            self._coerce_solver_value(key, value)
        with self.db.connect() as con:
            con.execute(
                """
                INSERT INTO app_config(config_key, config_value, updated_at)
                VALUES(?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(config_key) DO UPDATE SET
                    config_value = excluded.config_value,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (key, str(value)),
            )

    @staticmethod
    def _coerce_solver_value(key: str, value: Any) -> int | float:
        name = key[len(SOLVER_CONFIG_PREFIX):]
        defaults = SolverConfig()
        if name not in {f.name for f in fields(SolverConfig)}:
            raise ValueError(f"unknown solver setting: {key!r}")
        kind = type(getattr(defaults, name))
        try:
            parsed = kind(float(value)) if kind is int else float(value)
        except (TypeError, ValueError):
            raise ValueError(f"invalid value for {key}: {value!r}") from None
        if parsed < 0:
            raise ValueError(f"{key} must not be negative")
        if parsed == 0 and name in POSITIVE_SOLVER_SETTINGS:
            raise ValueError(f"{key} must be greater than zero")
        return parsed

    def get_solver_config(self) -> SolverConfig:
        """Solver defaults overridden by `solver_*` keys in app_config."""
        with self.db.connect() as con:
            rows = con.execute(
                "SELECT config_key, config_value FROM app_config WHERE config_key LIKE ?",
                (f"{SOLVER_CONFIG_PREFIX}%",),
            ).fetchall()
        overrides: dict[str, int | float] = {}
        for row in rows:
            key = row["config_key"]
            try:
                overrides[key[len(SOLVER_CONFIG_PREFIX):]] = self._coerce_solver_value(key, row["config_value"])
            except ValueError as exc:
                logger.warning("Ignoring solver setting %s: %s", key, exc)
        return SolverConfig(**overrides)

    # ---------------------------------------------------------------- coils

    def add_coils(self, coils: Iterable[Coil]) -> int:
        n = 0
        with self.db.connect() as con:
            for c in coils:
                con.execute(
                    """
                    INSERT INTO coil(
                        coil_id, coil_code, grade, coating, surface, thickness, width,
                        total_weight, remaining_weight, entry_date, last_used_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        c.coil_id,
                        c.coil_code,
                        Grade(c.grade).value,
                        int(c.coating),
                        Surface(c.surface).value,
                        float(c.thickness),
                        float(c.width),
                        float(c.total_weight),
                        float(c.remaining_weight),
                        c.entry_date,
                        c.last_used_at,
                    ),
                )
                n += 1
        return n

    def list_coils(self, *, min_remaining: float | None = None) -> list[Coil]:
        with self.db.connect() as con:
            if min_remaining is None:
                rows = con.execute("SELECT * FROM coil ORDER BY entry_date, coil_code").fetchall()
            else:
                rows = con.execute(
                    "SELECT * FROM coil WHERE remaining_weight > ? ORDER BY entry_date, coil_code",
                    (float(min_remaining),),
                ).fetchall()
        return [_coil_from_row(r) for r in rows]

    def get_coil(self, coil_id: str) -> Coil | None:
        with self.db.connect() as con:
            row = con.execute("SELECT * FROM coil WHERE coil_id = ?", (coil_id,)).fetchone()
        return _coil_from_row(row) if row else None

    def delete_coil(self, coil_id: str) -> None:
        with self.db.connect() as con:
            con.execute("DELETE FROM coil WHERE coil_id = ?", (coil_id,))

    def delete_all_coils(self) -> None:
        with self.db.connect() as con:
            con.execute("DELETE FROM coil")

    # --------------------------------------------------------- demand lines

    def add_demand_lines(self, lines: Iterable[DemandLine]) -> int:
        n = 0
        with self.db.connect() as con:
            for d in lines:
                con.execute(
                    """
                    INSERT INTO demand_line(
                        demand_id, material_code, name, quota, grade, coating, surface,
                        thickness, spec1, spec1_note, spec2, spec2_note, balance,
                        allow_overproduction, client, model, sheet_metal_code, batch_id, is_special
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        d.demand_id,
                        d.material_code,
                        d.name,
                        float(d.quota),
                        Grade(d.grade).value,
                        int(d.coating),
                        Surface(d.surface).value,
                        float(d.thickness),
                        float(d.spec1),
                        d.spec1_note,
                        float(d.spec2),
                        d.spec2_note,
                        round(float(d.balance), 2),
                        1 if d.allow_overproduction else 0,
                        d.client,
                        d.model,
                        d.sheet_metal_code,
                        d.batch_id,
                        1 if d.is_special else 0,
                    ),
                )
                n += 1
        return n

    def list_demand_lines(self) -> list[DemandLine]:
        with self.db.connect() as con:
            rows = con.execute("SELECT * FROM demand_line ORDER BY rowid").fetchall()
        return [_demand_from_row(r) for r in rows]

    def get_demand_line(self, demand_id: str) -> DemandLine | None:
        with self.db.connect() as con:
            row = con.execute("SELECT * FROM demand_line WHERE demand_id = ?", (demand_id,)).fetchone()
        return _demand_from_row(row) if row else None

    def delete_demand_line(self, demand_id: str) -> None:
        with self.db.connect() as con:
            con.execute("DELETE FROM demand_line WHERE demand_id = ?", (demand_id,))

    def delete_all_demand_lines(self) -> None:
        with self.db.connect() as con:
            con.execute("DELETE FROM demand_line")

    def set_allow_overproduction(self, demand_id: str, allow: bool) -> None:
        with self.db.connect() as con:
            cur = con.execute(
                "UPDATE demand_line SET allow_overproduction = ? WHERE demand_id = ?",
                (1 if allow else 0, demand_id),
            )
            if cur.rowcount == 0:
                raise ValueError(f"demand line not found: {demand_id!r}")

    # -------------------------------------------------------------- imports

    def import_text(self, *, kind: str, text: str) -> int:
        """Import pasted rows. kind: 'coils' | 'demand'."""
        kind = str(kind or "").strip().lower()
        if kind == "coils":
            n = self.add_coils(bulk_import.parse_coil_text(text))
        elif kind == "demand":
            n = self.add_demand_lines(bulk_import.parse_demand_text(text))
        else:
            raise ValueError(f"unsupported import kind: {kind!r}")
        self.log_audit("import", f"Imported {n} {kind} row(s)")
        return n

    def import_bytes(self, *, kind: str, content: bytes, filename: str = "") -> int:
        """Import an uploaded .xlsx/.csv file. kind: 'coils' | 'demand'."""
        kind = str(kind or "").strip().lower()
        if kind == "coils":
            n = self.add_coils(bulk_import.parse_coil_bytes(content, filename=filename))
        elif kind == "demand":
            n = self.add_demand_lines(bulk_import.parse_demand_bytes(content, filename=filename))
        else:
            raise ValueError(f"unsupported import kind: {kind!r}")
        self.log_audit("import", f"Imported {n} {kind} row(s) from {filename or 'upload'}")
        return n

    # ------------------------------------------------------------- planning

    def generate_plans_for(
        self,
        *,
        coil_id: str,
        mode: str = "stock",
        urgent_demand_id: str | None = None,
        cancel: threading.Event | None = None,
    ) -> PlanningResult:
        coil = self.get_coil(coil_id)
        if coil is None:
            raise ValueError(f"coil not found: {coil_id!r}")
        return generate_plans(
            coil,
            self.list_demand_lines(),
            mode=mode,
            urgent_demand_id=urgent_demand_id,
            config=self.get_solver_config(),
            cancel=cancel,
        )

    def generate_urgent_plans(
        self, *, demand_id: str, cancel: threading.Event | None = None
    ) -> tuple[Coil | None, str, PlanningResult]:
        """Pick the best coil for an urgent demand line and plan around it."""
        demand = self.get_demand_line(demand_id)
        if demand is None:
            raise ValueError(f"demand line not found: {demand_id!r}")
        coil, reason = pick_coil_for_demand(self.list_coils(), demand)
        if coil is None:
            return None, reason, PlanningResult(status=STATUS_NO_VIABLE_DEMAND, message=reason)
        result = generate_plans(
            coil,
            self.list_demand_lines(),
            mode="urgent",
            urgent_demand_id=demand_id,
            config=self.get_solver_config(),
            cancel=cancel,
        )
        return coil, reason, result

    def preview_plan(self, *, plan: Plan, coil_id: str) -> list[dict]:
        coil = self.get_coil(coil_id)
        if coil is None:
            raise ValueError(f"coil not found: {coil_id!r}")
        return plan_details(plan, coil, self.list_demand_lines())

    # --------------------------------------------------------------- ledger

    def execute_plan(self, *, plan: Plan, coil_id: str) -> ExecutionRecord:
        """Commit `plan` against a coil: book pieces, move balances, consume the coil.

        All of it happens in one transaction; on any failure nothing is applied
        and a single LedgerError is raised.
        """
        with self._ledger_lock:
            try:
                with self.db.connect() as con:
                    con.execute("BEGIN IMMEDIATE")
                    record = self._execute_in(con, plan=plan, coil_id=coil_id)
            except LedgerError:
                raise
            except Exception as exc:
                logger.exception("Execution of %s on coil %s failed", plan.name, coil_id)
                raise LedgerError(f"Execution failed, nothing was applied: {exc}") from exc

        logger.info(
            "Executed %s on coil %s: %.1f kg consumed, %d demand line(s) credited",
            record.plan_name,
            record.coil_code,
            record.total_consumed_weight,
            len(record.impacts),
        )
        return record

    def _execute_in(self, con, *, plan: Plan, coil_id: str) -> ExecutionRecord:
        row = con.execute("SELECT * FROM coil WHERE coil_id = ?", (coil_id,)).fetchone()
        if row is None:
            raise LedgerError(f"coil not found: {coil_id!r}")
        coil = _coil_from_row(row)

        consumed = float(plan.processing_weight)
        if consumed > coil.remaining_weight:
            logger.warning(
                "Plan %s needs %.1f kg but coil %s only has %.1f kg; booking what is left",
                plan.name,
                consumed,
                coil.coil_code,
                coil.remaining_weight,
            )
            consumed = coil.remaining_weight

        demands = {
            r["demand_id"]: _demand_from_row(r)
            for r in con.execute("SELECT * FROM demand_line ORDER BY rowid").fetchall()
        }
        impacts = compute_impacts(plan, coil, demands.values())
        for impact in impacts:
            updated = apply_impact(demands[impact.demand_id], impact)
            con.execute(
                "UPDATE demand_line SET balance = ? WHERE demand_id = ?",
                (updated.balance, updated.demand_id),
            )

        now = _now()
        used = consume_coil(coil, consumed, used_at=now)
        con.execute(
            "UPDATE coil SET remaining_weight = ?, last_used_at = ? WHERE coil_id = ?",
            (used.remaining_weight, used.last_used_at, used.coil_id),
        )

        record = ExecutionRecord(
            record_id=uuid4().hex,
            created_at=now,
            plan_name=plan.name,
            coil_id=coil.coil_id,
            coil_code=coil.coil_code,
            total_consumed_weight=round(consumed, 1),
            efficiency=plan.efficiency,
            segments=tuple(plan.segments),
            impacts=tuple(impacts),
        )
        self._write_execution_record(con, record)
        self._insert_audit(
            con,
            "execution",
            f"{record.plan_name} on coil {record.coil_code}: {record.total_consumed_weight} kg",
            json.dumps({"record_id": record.record_id, "pieces": sum(i.pieces for i in impacts)}),
        )
        return record

    def _write_execution_record(self, con, record: ExecutionRecord) -> None:
        con.execute(
            """
            INSERT INTO execution_record(
                record_id, created_at, plan_name, coil_id, coil_code,
                total_consumed_weight, efficiency, segments_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.record_id,
                record.created_at,
                record.plan_name,
                record.coil_id,
                record.coil_code,
                record.total_consumed_weight,
                record.efficiency,
                segments_to_json(record.segments),
            ),
        )
        con.executemany(
            """
            INSERT INTO execution_impact(
                record_id, demand_id, material_code, material_name, weight_deducted, pieces
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (record.record_id, i.demand_id, i.material_code, i.material_name, i.weight_deducted, i.pieces)
                for i in record.impacts
            ],
        )

    def revoke_execution(self, record: ExecutionRecord | str) -> dict:
        """Undo an execution from its stored impact snapshot, then delete it.

        A coil deleted since execution is skipped (its weight cannot be
        restored); demand balances are still restored.
        """
        record_id = record if isinstance(record, str) else record.record_id
        with self._ledger_lock:
            try:
                with self.db.connect() as con:
                    con.execute("BEGIN IMMEDIATE")
                    summary = self._revoke_in(con, record_id=record_id)
            except LedgerError:
                raise
            except Exception as exc:
                logger.exception("Revoking execution %s failed", record_id)
                raise LedgerError(f"Revoke failed, nothing was applied: {exc}") from exc

        logger.info(
            "Revoked execution %s: coil restored=%s, %d demand line(s) restored",
            record_id,
            summary["coil_restored"],
            summary["demand_lines_restored"],
        )
        return summary

    def _revoke_in(self, con, *, record_id: str) -> dict:
        rec = self._read_execution(con, record_id)
        if rec is None:
            raise LedgerError(f"execution record not found: {record_id!r}")

        coil_restored = False
        row = con.execute("SELECT * FROM coil WHERE coil_id = ?", (rec.coil_id,)).fetchone()
        if row is not None:
            restored = restore_coil(_coil_from_row(row), rec.total_consumed_weight)
            con.execute(
                "UPDATE coil SET remaining_weight = ? WHERE coil_id = ?",
                (restored.remaining_weight, restored.coil_id),
            )
            coil_restored = True
        else:
            logger.warning("Coil %s of execution %s no longer exists; weight not restored", rec.coil_code, record_id)

        restored_lines = 0
        missing: list[str] = []
        for impact in rec.impacts:
            drow = con.execute("SELECT * FROM demand_line WHERE demand_id = ?", (impact.demand_id,)).fetchone()
            if drow is None:
                logger.warning("Demand line %s of execution %s no longer exists", impact.material_code, record_id)
                missing.append(impact.demand_id)
                continue
            reverted = revert_impact(_demand_from_row(drow), impact)
            con.execute(
                "UPDATE demand_line SET balance = ? WHERE demand_id = ?",
                (reverted.balance, reverted.demand_id),
            )
            restored_lines += 1

        con.execute("DELETE FROM execution_impact WHERE record_id = ?", (record_id,))
        con.execute("DELETE FROM execution_record WHERE record_id = ?", (record_id,))
        self._insert_audit(
            con,
            "revoke",
            f"Revoked {rec.plan_name} on coil {rec.coil_code}",
            json.dumps({"record_id": record_id, "coil_restored": coil_restored}),
        )
        return {
            "record_id": record_id,
            "coil_restored": coil_restored,
            "restored_weight": rec.total_consumed_weight if coil_restored else 0.0,
            "demand_lines_restored": restored_lines,
            "demand_lines_missing": missing,
        }

    def _read_execution(self, con, record_id: str) -> ExecutionRecord | None:
        row = con.execute("SELECT * FROM execution_record WHERE record_id = ?", (record_id,)).fetchone()
        if row is None:
            return None
        impacts = tuple(
            Impact(
                demand_id=r["demand_id"],
                material_code=r["material_code"],
                material_name=r["material_name"],
                weight_deducted=float(r["weight_deducted"]),
                pieces=int(r["pieces"]),
            )
            for r in con.execute(
                "SELECT * FROM execution_impact WHERE record_id = ? ORDER BY rowid", (record_id,)
            ).fetchall()
        )
        return ExecutionRecord(
            record_id=row["record_id"],
            created_at=row["created_at"],
            plan_name=row["plan_name"],
            coil_id=row["coil_id"],
            coil_code=row["coil_code"],
            total_consumed_weight=float(row["total_consumed_weight"]),
            efficiency=float(row["efficiency"]),
            segments=segments_from_json(row["segments_json"]),
            impacts=impacts,
        )

    def get_execution(self, record_id: str) -> ExecutionRecord | None:
        with self.db.connect() as con:
            return self._read_execution(con, record_id)

    def list_executions(self) -> list[ExecutionRecord]:
        with self.db.connect() as con:
            ids = [
                r["record_id"]
                for r in con.execute("SELECT record_id FROM execution_record ORDER BY created_at, rowid").fetchall()
            ]
            return [rec for rec in (self._read_execution(con, i) for i in ids) if rec is not None]

    def export_history_csv(self) -> bytes:
        return bulk_import.export_history_csv(self.list_executions())
