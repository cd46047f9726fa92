"""Coil slitting planner: cutting-plan solver plus a reversible production ledger."""
