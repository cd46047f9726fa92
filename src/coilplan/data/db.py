from __future__ import annotations


from contextlib import contextmanager
import sqlite3
from pathlib import Path


class Db:
    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def connect(self):
        con = sqlite3.connect(self.path, timeout=20.0)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys=ON;")
        try:
            yield con
            con.commit()
        except Exception:
            con.rollback()
            raise
        finally:
            con.close()

    def ensure_schema(self) -> None:
        con = sqlite3.connect(self.path, timeout=10.0)
        try:
            con.execute("PRAGMA journal_mode=WAL;")
            con.execute("PRAGMA foreign_keys=ON;")

            con.executescript(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL DEFAULT(datetime('now', 'localtime')),
                    category TEXT NOT NULL,
                    message TEXT NOT NULL,
                    details TEXT
                );

                CREATE TABLE IF NOT EXISTS app_config (
                    config_key TEXT PRIMARY KEY,
                    config_value TEXT NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );

                -- Mother coils
                CREATE TABLE IF NOT EXISTS coil (
                    coil_id TEXT PRIMARY KEY,
                    coil_code TEXT NOT NULL,
                    grade TEXT NOT NULL,
                    coating INTEGER NOT NULL,
                    surface TEXT NOT NULL,
                    thickness REAL NOT NULL,
                    width REAL NOT NULL,
                    total_weight REAL NOT NULL,
                    remaining_weight REAL NOT NULL,
                    entry_date TEXT NOT NULL,
                    last_used_at TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    CHECK (remaining_weight >= 0)
                );

                -- BOM shortage / stock lines (balance < 0 = shortage)
                CREATE TABLE IF NOT EXISTS demand_line (
                    demand_id TEXT PRIMARY KEY,
                    material_code TEXT NOT NULL,
                    name TEXT NOT NULL DEFAULT '',
                    quota REAL NOT NULL DEFAULT 0,
                    grade TEXT NOT NULL,
                    coating INTEGER NOT NULL,
                    surface TEXT NOT NULL,
                    thickness REAL NOT NULL,
                    spec1 REAL NOT NULL DEFAULT 0,
                    spec1_note TEXT,
                    spec2 REAL NOT NULL DEFAULT 0,
                    spec2_note TEXT,
                    balance REAL NOT NULL DEFAULT 0,
                    allow_overproduction INTEGER NOT NULL DEFAULT 0,
                    client TEXT NOT NULL DEFAULT '',
                    model TEXT NOT NULL DEFAULT '',
                    sheet_metal_code TEXT NOT NULL DEFAULT '',
                    batch_id TEXT NOT NULL DEFAULT '',
                    is_special INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );

                -- Executed plans (immutable once written)
                CREATE TABLE IF NOT EXISTS execution_record (
                    record_id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    plan_name TEXT NOT NULL,
                    coil_id TEXT NOT NULL,
                    coil_code TEXT NOT NULL,
                    total_consumed_weight REAL NOT NULL,
                    efficiency REAL NOT NULL,
                    segments_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS execution_impact (
                    record_id TEXT NOT NULL,
                    demand_id TEXT NOT NULL,
                    material_code TEXT NOT NULL,
                    material_name TEXT NOT NULL,
                    weight_deducted REAL NOT NULL,
                    pieces INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY(record_id, demand_id),
                    FOREIGN KEY(record_id) REFERENCES execution_record(record_id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS ix_execution_record_created ON execution_record(created_at);
                CREATE INDEX IF NOT EXISTS ix_demand_line_material ON demand_line(material_code);
                """
            )
            con.commit()
        finally:
            con.close()
