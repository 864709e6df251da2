"""
ecosched/shared/config.py
─────────────────────────
SchedulerConfig: every tunable the policies read, in one validated model.

The defaults live as module-level constants so tests can import and assert
against them directly. SchedulerConfig bundles them into a pydantic model so
a harness can override any subset with a plain dict:

    config = SchedulerConfig.from_mapping({"high_load_threshold": 0.8})

Validation rejects nonsense early (a low-load threshold above the high-load
threshold would make the tier manager oscillate on every tick).
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, model_validator

from ecosched.shared.models import PowerState

# ── Tier sizing ───────────────────────────────────────────────────────────────

RUNNING_TIER_FRACTION: float = 0.80
"""Share of the fleet kept ACTIVE at startup by the tiered policy."""

INTERMEDIATE_TIER_FRACTION: float = 0.15
"""Share of the fleet parked in STANDBY at startup. The rest is OFF."""

MIN_RUNNING_MACHINES: int = 4
"""Lower bound on the running tier size, however small the fleet."""

MIN_INTERMEDIATE_MACHINES: int = 2
"""Lower bound on the standby tier size."""

WORKLOAD_SAFETY_MARGIN: float = 1.2
"""Multiplier on the sampled in-flight task count before sizing tiers."""

# ── Hysteresis ────────────────────────────────────────────────────────────────

HIGH_LOAD_THRESHOLD: float = 0.70
"""System load above which the ACTIVE tier grows.

Load is tracked memory used divided by memory capacity over ACTIVE machines.
"""

LOW_LOAD_THRESHOLD: float = 0.30
"""System load below which idle ACTIVE machines may be put to sleep.

The gap between the two thresholds is what stops a machine from being
switched on and off on consecutive ticks.
"""

MAX_ACTIVATIONS_PER_ADJUST: int = 8
"""Upper bound on machines woken by one tier adjustment."""

MAX_DEACTIVATIONS_PER_ADJUST: int = 2
"""Upper bound on machines put to sleep by one tier adjustment."""

MIN_ACTIVE_MACHINES: int = 1
"""Floor on the ACTIVE machine count. Idle sweeps never go below it."""

# ── Cadence ───────────────────────────────────────────────────────────────────

TICK_INTERVAL_S: float = 10.0
"""Simulated seconds between periodic ticks (used by the simulation driver)."""

CONSOLIDATE_EVERY_N_COMPLETIONS: int = 5
"""Consolidation runs on every Nth task completion.

Consolidation is O(machines × tasks). Running it on every completion is
measurable overhead on large traces for almost no extra packing.
"""

TIER_ADJUST_INTERVAL_S: float = 60.0
"""Minimum simulated seconds between two full tier adjustments."""

PROACTIVE_CHECK_EVERY_N_COMPLETIONS: int = 500
"""Tiered policy: how often completions trigger the proactive wake check."""

PROACTIVE_RUNNING_FRACTION: float = 0.70
"""Tiered policy: wake machines when fewer than this share are ACTIVE."""

PROACTIVE_ACTIVATION_FRACTION: float = 0.10
"""Tiered policy: share of the fleet woken by one proactive check (max 4)."""

# ── Predictive policy ─────────────────────────────────────────────────────────

PREDICTOR_SEED: int = 7
"""Seed for LSTM weight initialisation. Same seed → same placements."""


class SchedulerConfig(BaseModel):
    """
    Validated bundle of scheduler tunables.

    One instance is shared by the scheduler, its policy and every engine
    it owns. Treat it as read-only after construction.
    """

    running_tier_fraction: float = Field(RUNNING_TIER_FRACTION, gt=0.0, le=1.0)
    intermediate_tier_fraction: float = Field(INTERMEDIATE_TIER_FRACTION, ge=0.0, le=1.0)
    min_running_machines: int = Field(MIN_RUNNING_MACHINES, ge=1)
    min_intermediate_machines: int = Field(MIN_INTERMEDIATE_MACHINES, ge=0)
    workload_safety_margin: float = Field(WORKLOAD_SAFETY_MARGIN, ge=1.0)

    high_load_threshold: float = Field(HIGH_LOAD_THRESHOLD, gt=0.0, le=1.0)
    low_load_threshold: float = Field(LOW_LOAD_THRESHOLD, ge=0.0, lt=1.0)
    max_activations_per_adjust: int = Field(MAX_ACTIVATIONS_PER_ADJUST, ge=1)
    max_deactivations_per_adjust: int = Field(MAX_DEACTIVATIONS_PER_ADJUST, ge=1)
    min_active_machines: int = Field(MIN_ACTIVE_MACHINES, ge=0)
    idle_power_state: PowerState = Field(
        PowerState.STANDBY,
        description="State idle machines are sent to by sweeps and consolidation",
    )

    tick_interval_s: float = Field(TICK_INTERVAL_S, gt=0.0)
    consolidate_every_n_completions: int = Field(CONSOLIDATE_EVERY_N_COMPLETIONS, ge=1)
    tier_adjust_interval_s: float = Field(TIER_ADJUST_INTERVAL_S, ge=0.0)
    proactive_check_every_n_completions: int = Field(PROACTIVE_CHECK_EVERY_N_COMPLETIONS, ge=1)
    proactive_running_fraction: float = Field(PROACTIVE_RUNNING_FRACTION, ge=0.0, le=1.0)
    proactive_activation_fraction: float = Field(PROACTIVE_ACTIVATION_FRACTION, ge=0.0, le=1.0)

    predictor_seed: int = PREDICTOR_SEED
    check_invariants: bool = Field(
        False, description="Re-verify the placement ledger after every event (slow)",
    )

    @model_validator(mode="after")
    def _check_thresholds(self) -> "SchedulerConfig":
        if self.low_load_threshold >= self.high_load_threshold:
            raise ValueError(
                f"low_load_threshold ({self.low_load_threshold}) must be below "
                f"high_load_threshold ({self.high_load_threshold})"
            )
        if self.idle_power_state is PowerState.ACTIVE:
            raise ValueError("idle_power_state must be STANDBY or OFF")
        return self

    @classmethod
    def from_mapping(cls, overrides: Optional[Mapping[str, Any]] = None) -> "SchedulerConfig":
        """Build a config from defaults plus any harness-supplied overrides."""
        return cls.model_validate(dict(overrides or {}))
