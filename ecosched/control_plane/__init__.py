"""
ecosched/control_plane — the scheduling brain.

Public API:

    Scheduler                — event handlers + lifecycle (init / shutdown)
    SchedulerStateError      — event delivered outside init()..shutdown()

    Policies:
        SchedulingPolicy     — base class; rank() + lifecycle hooks
        FirstMatchPolicy     — "bare-bones"
        GreedyUtilizationPolicy — "greedy"
        EnergyRankedPolicy   — "pmapper"
        TieredPolicy         — "eeco"
        PredictivePolicy     — "predictive"
        build_policy()       — name → policy instance
        PolicyNotFoundError  — unknown policy name

    Engines:
        PlacementLedger      — core-owned placement bookkeeping
        LedgerInvariantError — irrecoverable bookkeeping break
        PlacementEngine      — new-task placement, task-level moves
        ConsolidationEngine  — migration towards fewer machines
        PowerManager         — power tiers + pending-request side-table
        ViolationRecoveryHandler — service-level-risk reactions
        ResponseTimePredictor — LSTM response-time forecaster
"""

from ecosched.control_plane.ledger import LedgerInvariantError, PlacementLedger
from ecosched.control_plane.power import PowerManager, compute_tier_sizes
from ecosched.control_plane.placement import PlacementEngine
from ecosched.control_plane.consolidation import ConsolidationEngine
from ecosched.control_plane.recovery import ViolationRecoveryHandler
from ecosched.control_plane.predictor import ResponseTimePredictor
from ecosched.control_plane.policies import (
    EnergyRankedPolicy,
    FirstMatchPolicy,
    GreedyUtilizationPolicy,
    PolicyNotFoundError,
    PredictivePolicy,
    SchedulingPolicy,
    TieredPolicy,
    build_policy,
)
from ecosched.control_plane.scheduler import Scheduler, SchedulerStateError

__all__ = [
    "Scheduler",
    "SchedulerStateError",
    "SchedulingPolicy",
    "FirstMatchPolicy",
    "GreedyUtilizationPolicy",
    "EnergyRankedPolicy",
    "TieredPolicy",
    "PredictivePolicy",
    "build_policy",
    "PolicyNotFoundError",
    "PlacementLedger",
    "LedgerInvariantError",
    "PlacementEngine",
    "ConsolidationEngine",
    "PowerManager",
    "compute_tier_sizes",
    "ViolationRecoveryHandler",
    "ResponseTimePredictor",
]
