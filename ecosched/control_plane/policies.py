"""
ecosched/control_plane/policies.py
──────────────────────────────────
SchedulingPolicy: the one seam where scheduler variants differ.

Every variant shares the same PlacementEngine, ConsolidationEngine,
PowerManager and ViolationRecoveryHandler. A policy supplies only:

  rank(candidates, task)  → the order in which machines are tried
  init(now)               → initial power arrangement
  on_task_completion(...) → what a completion triggers (consolidation,
                            learning, proactive wake-ups)
  on_tick(now)            → periodic maintenance
  active_floor()          → fewest ACTIVE machines this policy will keep

The five policies
──────────────────
  bare-bones   FirstMatchPolicy         id order, machines already running a
                                         VM of the task's type first. Never
                                         consolidates or sleeps machines.
  greedy       GreedyUtilizationPolicy  least-utilised first. Consolidates
                                         every N completions and every tick.
  pmapper      EnergyRankedPolicy       machines pre-ranked by measured power
                                         draw, cheapest first. Ranking rebuilt
                                         on every tick; consolidates like greedy.
  eeco         TieredPolicy             least-utilised inside the ACTIVE tier.
                                         80/15/5 initial tiers, hysteresis tier
                                         adjustment on ticks, proactive wake-ups.
  predictive   PredictivePolicy         lowest predicted response time, from a
                                         per-machine ResponseProfile and LSTM.
                                         Sweeps idle machines on ticks.

Policies are built by name with build_policy(), once, at startup.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Type

from ecosched.cluster.catalog import ResourceCatalog
from ecosched.cluster.harness import ClusterHarness
from ecosched.control_plane.consolidation import ConsolidationEngine
from ecosched.control_plane.ledger import PlacementLedger
from ecosched.control_plane.power import PowerManager, compute_tier_sizes, plan_initial_tiers
from ecosched.control_plane.predictor import ResponseTimePredictor
from ecosched.shared.config import SchedulerConfig
from ecosched.shared.models import PowerState, TaskRequirements
from ecosched.shared.telemetry import ResponseProfile, ResponseSample

logger = logging.getLogger(__name__)


class PolicyNotFoundError(ValueError):
    """
    Raised by build_policy() for a name that is not registered.

    Attributes:
        name:      The name that was asked for.
        available: Registered policy names.
    """

    def __init__(self, name: str, available: List[str]) -> None:
        self.name = name
        self.available = available
        super().__init__(
            f"Unknown scheduling policy {name!r}. Available: {', '.join(available)}"
        )


@dataclass
class PolicyContext:
    """Everything a policy may read or drive. Built by the Scheduler."""
    harness: ClusterHarness
    catalog: ResourceCatalog
    ledger: PlacementLedger
    power: PowerManager
    consolidation: ConsolidationEngine
    config: SchedulerConfig


class SchedulingPolicy(ABC):
    """Base class. Subclasses set `name` and implement rank()."""

    name: str = ""

    def __init__(self, config: Optional[SchedulerConfig] = None) -> None:
        self.config = config or SchedulerConfig()
        self._ctx: Optional[PolicyContext] = None

    def bind(self, ctx: PolicyContext) -> None:
        self._ctx = ctx

    @property
    def ctx(self) -> PolicyContext:
        if self._ctx is None:
            raise RuntimeError(f"{type(self).__name__} used before bind()")
        return self._ctx

    @abstractmethod
    def rank(self, candidates: List[int], task: TaskRequirements) -> List[int]:
        """Order candidate machine ids, best first. Ties → lowest id."""

    def init(self, now: float) -> None:
        pass

    def on_task_completion(self, now: float, task_id: int, machine_id: Optional[int],
                           response_time: Optional[float], completions: int) -> None:
        pass

    def on_tick(self, now: float) -> None:
        pass

    def active_floor(self) -> int:
        return self.config.min_active_machines

    def _by_utilization(self, candidates: List[int]) -> List[int]:
        ledger = self.ctx.ledger
        return sorted(candidates, key=lambda m: (ledger.utilization(m), m))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


# ── bare-bones ─────────────────────────────────────────────────────────────────

class FirstMatchPolicy(SchedulingPolicy):
    """Lowest id first, machines already hosting a matching VM ahead of the rest."""

    name = "bare-bones"

    def rank(self, candidates: List[int], task: TaskRequirements) -> List[int]:
        ledger = self.ctx.ledger
        return sorted(
            candidates,
            key=lambda m: (ledger.find_vm(m, task.required_vm) is None, m),
        )

    def active_floor(self) -> int:
        return self.ctx.catalog.machine_count()


# ── greedy ─────────────────────────────────────────────────────────────────────

class GreedyUtilizationPolicy(SchedulingPolicy):
    """Least-utilised machine first; periodic consolidation."""

    name = "greedy"

    def rank(self, candidates: List[int], task: TaskRequirements) -> List[int]:
        return self._by_utilization(candidates)

    def on_task_completion(self, now: float, task_id: int, machine_id: Optional[int],
                           response_time: Optional[float], completions: int) -> None:
        if completions % self.config.consolidate_every_n_completions == 0:
            self.ctx.consolidation.consolidate(now, self.active_floor())

    def on_tick(self, now: float) -> None:
        self.ctx.consolidation.consolidate(now, self.active_floor())


# ── pmapper ────────────────────────────────────────────────────────────────────

class EnergyRankedPolicy(GreedyUtilizationPolicy):
    """
    Cheapest machine first, by power draw measured between two ticks.

    The draw of machine m over the last tick interval is
    (E_now - E_prev) / (t_now - t_prev). Before the first interval every
    machine ranks by id.
    """

    name = "pmapper"

    def __init__(self, config: Optional[SchedulerConfig] = None) -> None:
        super().__init__(config)
        self._draw: Dict[int, float] = {}
        self._last_energy: Dict[int, float] = {}
        self._last_time: Optional[float] = None
        self._position: Dict[int, int] = {}

    def init(self, now: float) -> None:
        self.build_ranking(now)

    def build_ranking(self, now: float) -> List[int]:
        """Recompute the energy ranking. Returns machine ids cheapest first."""
        catalog = self.ctx.catalog
        energy = {m: catalog.energy_consumed(m) for m in catalog.machine_ids()}
        if self._last_time is not None and now > self._last_time:
            dt = now - self._last_time
            self._draw = {m: (energy[m] - self._last_energy.get(m, 0.0)) / dt for m in energy}
        else:
            self._draw = {m: 0.0 for m in energy}
        self._last_energy = energy
        self._last_time = now

        ranking = sorted(energy, key=lambda m: (self._draw[m], m))
        self._position = {m: i for i, m in enumerate(ranking)}
        return ranking

    @property
    def ranking(self) -> List[int]:
        return sorted(self._position, key=self._position.get)

    def rank(self, candidates: List[int], task: TaskRequirements) -> List[int]:
        return sorted(candidates, key=lambda m: (self._position.get(m, len(self._position)), m))

    def on_tick(self, now: float) -> None:
        self.build_ranking(now)
        super().on_tick(now)


# ── eeco ───────────────────────────────────────────────────────────────────────

class TieredPolicy(SchedulingPolicy):
    """Three power tiers sized from the workload, adjusted with hysteresis."""

    name = "eeco"

    def rank(self, candidates: List[int], task: TaskRequirements) -> List[int]:
        return self._by_utilization(candidates)

    def init(self, now: float) -> None:
        plan = plan_initial_tiers(self.ctx.catalog.machines_by_arch(), self.config)
        self.ctx.power.apply_plan(plan, now)
        logger.info(
            "Tiered init: %d running, %d standby, %d off",
            sum(1 for s in plan.values() if s is PowerState.ACTIVE),
            sum(1 for s in plan.values() if s is PowerState.STANDBY),
            sum(1 for s in plan.values() if s is PowerState.OFF),
        )

    def _workload(self) -> int:
        return len(self.ctx.ledger.tracked_tasks())

    def on_tick(self, now: float) -> None:
        self.ctx.power.adjust_tiers(now, self._workload())

    def on_task_completion(self, now: float, task_id: int, machine_id: Optional[int],
                           response_time: Optional[float], completions: int) -> None:
        if completions % self.config.proactive_check_every_n_completions == 0:
            self.ctx.power.proactive_activate(now)

    def active_floor(self) -> int:
        total = self.ctx.catalog.machine_count()
        workload = int(self._workload() * self.config.workload_safety_margin)
        running, _ = compute_tier_sizes(total, workload, self.config)
        return running


# ── predictive ─────────────────────────────────────────────────────────────────

class PredictivePolicy(SchedulingPolicy):
    """
    Lowest predicted response time first.

    Score of machine m = forecast(m) × burst_factor(m) × (1 + utilisation(m)).
    burst_factor is max / mean response time over the profile window, so a
    machine with occasional very slow responses ranks behind a steady one
    with the same mean. A machine with no history is scored with the
    fleet-wide mean and a burst factor of 1, so it is neither favoured nor
    avoided. Equal scores fall back to utilisation, then id.
    """

    name = "predictive"

    def __init__(self, config: Optional[SchedulerConfig] = None) -> None:
        super().__init__(config)
        self.profiles: Dict[int, ResponseProfile] = {}
        self.predictors: Dict[int, ResponseTimePredictor] = {}
        self._forecast: Dict[int, float] = {}

    def bind(self, ctx: PolicyContext) -> None:
        super().bind(ctx)
        for machine_id in ctx.catalog.machine_ids():
            self.profiles[machine_id] = ResponseProfile(machine_id=machine_id)
            self.predictors[machine_id] = ResponseTimePredictor(
                machine_id, seed=self.config.predictor_seed,
            )

    def predicted_response(self, machine_id: int) -> float:
        if machine_id in self._forecast:
            return self._forecast[machine_id]
        profile = self.profiles[machine_id]
        if not profile.samples:
            known = [p.avg_response_time for p in self.profiles.values() if p.samples]
            return sum(known) / len(known) if known else 0.0
        value = self.predictors[machine_id].predict(profile).predicted_response_time
        self._forecast[machine_id] = value
        return value

    def rank(self, candidates: List[int], task: TaskRequirements) -> List[int]:
        ledger = self.ctx.ledger

        def score(m: int):
            util = ledger.utilization(m)
            burst = self.profiles[m].burst_factor
            return (self.predicted_response(m) * burst * (1.0 + util), util, m)

        return sorted(candidates, key=score)

    def on_task_completion(self, now: float, task_id: int, machine_id: Optional[int],
                           response_time: Optional[float], completions: int) -> None:
        if machine_id is None or response_time is None:
            return
        profile = self.profiles[machine_id]
        profile.add_sample(ResponseSample(time=now, response_time=response_time))
        self.predictors[machine_id].refit_if_needed(profile)
        self._forecast.pop(machine_id, None)

    def on_tick(self, now: float) -> None:
        self.ctx.power.idle_sweep(now, self.active_floor())


# ── Registry ───────────────────────────────────────────────────────────────────

POLICIES: Dict[str, Type[SchedulingPolicy]] = {
    cls.name: cls
    for cls in (
        FirstMatchPolicy,
        GreedyUtilizationPolicy,
        EnergyRankedPolicy,
        TieredPolicy,
        PredictivePolicy,
    )
}


def build_policy(name: str, config: Optional[SchedulerConfig] = None) -> SchedulingPolicy:
    """
    Instantiate a policy by its registered name.

    Raises:
        PolicyNotFoundError: name is not in POLICIES.
    """
    cls = POLICIES.get(name)
    if cls is None:
        raise PolicyNotFoundError(name, sorted(POLICIES))
    return cls(config)
