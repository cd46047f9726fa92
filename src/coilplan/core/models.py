from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Grade(str, Enum):
    DX51D = "DX51D"
    DX52D = "DX52D"
    DX53D = "DX53D"
    DX54D = "DX54D"


class Surface(str, Enum):
    Y = "Y"  # oiled / non-passivated
    FY = "FY"  # passivated


class Usage(str, Enum):
    PRODUCT = "PRODUCT"
    SCRAP = "SCRAP"


# Higher rank may substitute for a lower requirement, never the reverse.
GRADE_RANK: dict[Grade, int] = {
    Grade.DX51D: 1,
    Grade.DX52D: 2,
    Grade.DX53D: 3,
    Grade.DX54D: 4,
}

COATINGS: tuple[int, int] = (80, 180)

# Width notes marking a special variant that may not be swapped for a plain width.
STRICT_MARKERS: tuple[str, str] = ("*C", "*L")


@dataclass(frozen=True)
class Coil:
    coil_id: str
    coil_code: str
    grade: Grade
    coating: int
    surface: Surface
    thickness: float
    width: float
    total_weight: float
    remaining_weight: float
    entry_date: str
    last_used_at: str | None = None


@dataclass(frozen=True)
class DemandLine:
    demand_id: str
    material_code: str
    name: str
    quota: float  # standard kg per piece at nominal thickness
    grade: Grade
    coating: int
    surface: Surface
    thickness: float
    spec1: float
    spec2: float
    balance: float  # negative = shortage owed, positive = surplus
    spec1_note: str | None = None
    spec2_note: str | None = None
    allow_overproduction: bool = False
    client: str = ""
    model: str = ""
    sheet_metal_code: str = ""
    batch_id: str = ""
    is_special: bool = False


@dataclass(frozen=True)
class Strip:
    demand_id: str | None
    material_code: str
    width: float
    count: int
    usage: Usage = Usage.PRODUCT


@dataclass(frozen=True)
class Segment:
    ordinal: int
    strips: tuple[Strip, ...]
    processing_weight: float
    efficiency: float
    used_width: float


@dataclass(frozen=True)
class Plan:
    plan_id: str
    name: str
    description: str
    segments: tuple[Segment, ...]
    efficiency: float
    processing_weight: float
    remaining_coil_weight: float


@dataclass(frozen=True)
class Impact:
    demand_id: str
    material_code: str
    material_name: str
    weight_deducted: float  # standard weight
    pieces: int


@dataclass(frozen=True)
class ExecutionRecord:
    record_id: str
    created_at: str
    plan_name: str
    coil_id: str
    coil_code: str
    total_consumed_weight: float
    efficiency: float
    segments: tuple[Segment, ...]
    impacts: tuple[Impact, ...]


@dataclass(frozen=True)
class SolverConfig:
    max_strips: int = 9
    max_segments: int = 3
    time_budget_s: float = 3.0
    overstock_factor: float = 1.10
    shortage_buffer_kg: float = 200.0
    stock_cap_kg: float = 1500.0
    efficiency_threshold: float = 96.0
    target_efficiency: float = 97.5
    urgent_bonus: float = 10_000_000.0
    grade_match_bonus: float = 5_000.0
    greedy_top_n: int = 40
    min_remainder_kg: float = 50.0
    weight_step_kg: float = 10.0
    max_seeds: int = 3


@dataclass
class AuditEntry:
    id: int
    timestamp: str
    category: str
    message: str
    details: str | None = None


@dataclass(frozen=True)
class PlanningResult:
    status: str  # "ok" | "no_viable_demand" | "efficiency_below_threshold" | "coil_exhausted"
    plans: list[Plan] = field(default_factory=list)
    message: str = ""
    compatible_count: int = 0

    @property
    def ok(self) -> bool:
        return self.status == "ok"
