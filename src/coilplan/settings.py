from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    db_path: Path
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"
    title: str = "CoilPlan"


def default_db_path() -> Path:
    # Repo-local database unless COILPLAN_DB points elsewhere.
    raw = os.environ.get("COILPLAN_DB", "").strip()
    return Path(raw) if raw else Path("db") / "coilplan.db"
