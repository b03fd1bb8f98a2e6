"""
Background jobs module.
"""

from src.jobs.reconcile_roles import RoleSweepStats, run_role_sweep

__all__ = [
    "RoleSweepStats",
    "run_role_sweep",
]
