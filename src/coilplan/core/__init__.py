"""Core package.

Pure domain logic: compatibility and quota rules, the segment pattern solver,
the plan assembler and the ledger arithmetic. Nothing here touches storage.
"""

from coilplan.core.compat import adjusted_quota, check_compatibility, pieces_from_weight
from coilplan.core.ledger import LedgerError, compute_impacts, plan_details
from coilplan.core.models import Coil, DemandLine, ExecutionRecord, Impact, Plan, Segment, SolverConfig, Strip
from coilplan.core.patterns import solve_segment_patterns
from coilplan.core.planner import generate_plans, pick_coil_for_demand

__all__ = [
    "Coil",
    "DemandLine",
    "ExecutionRecord",
    "Impact",
    "LedgerError",
    "Plan",
    "Segment",
    "SolverConfig",
    "Strip",
    "adjusted_quota",
    "check_compatibility",
    "compute_impacts",
    "generate_plans",
    "pick_coil_for_demand",
    "pieces_from_weight",
    "plan_details",
    "solve_segment_patterns",
]
