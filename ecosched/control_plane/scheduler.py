"""
ecosched/control_plane/scheduler.py
───────────────────────────────────
Scheduler: the event-driven control plane.

Lifecycle
──────────
    scheduler = Scheduler(harness, "greedy")
    scheduler.init(now=0.0)
    scheduler.on_task_arrival(now, task_id)      ┐
    scheduler.on_task_completion(now, task_id)   │ any order the harness
    scheduler.on_periodic_tick(now)              │ delivers, one at a time,
    scheduler.on_migration_complete(now, vm_id)  │ in non-decreasing time
    ...                                          ┘
    report = scheduler.shutdown(now)

There is no module-level scheduler. A harness may drive any number of
independent instances side by side, which is how the policy comparison
tests run.

What each event does
─────────────────────
  task arrival          PlacementEngine.place()
  task completion       ledger removal, response-time bookkeeping, then
                        policy.on_task_completion() (consolidation etc.)
  periodic tick         policy.on_tick()
  migration complete    ConsolidationEngine.on_migration_complete()
  power change complete PowerManager reconciliation, then deferred
                        relocations waiting on that machine (released
                        instead if it settles in another state)
  service-level risk    ViolationRecoveryHandler.handle()
  capacity overflow     advisory: logged and counted only

Error contract
───────────────
Ids the harness or the ledger does not know are logged, counted in
unknown_lookups and the event is dropped. Events delivered before init()
or after shutdown() raise SchedulerStateError. LedgerInvariantError is
never caught.

Thread safety
──────────────
Not thread-safe. Handlers run to completion, never block and never sleep.
"""

from __future__ import annotations

import functools
import logging
from typing import Callable, Dict, Optional, TypeVar, Union

from ecosched.cluster.catalog import ResourceCatalog
from ecosched.cluster.harness import ClusterHarness, UnknownEntityError
from ecosched.control_plane.consolidation import ConsolidationEngine
from ecosched.control_plane.ledger import PlacementLedger
from ecosched.control_plane.placement import PlacementEngine
from ecosched.control_plane.policies import PolicyContext, SchedulingPolicy, build_policy
from ecosched.control_plane.power import PowerManager
from ecosched.control_plane.recovery import ViolationRecoveryHandler
from ecosched.shared.config import SchedulerConfig
from ecosched.shared.models import (
    PlacementOutcome,
    PlacementStatus,
    PowerState,
    SchedulerReport,
    SLAClass,
)

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable)

STATE_NEW = "new"
STATE_RUNNING = "running"
STATE_SHUT_DOWN = "shut-down"


class SchedulerStateError(RuntimeError):
    """
    Raised when an event arrives in the wrong lifecycle state.

    Attributes:
        event: Handler name that was called.
        state: Lifecycle state at the time.
    """

    def __init__(self, event: str, state: str) -> None:
        self.event = event
        self.state = state
        super().__init__(
            f"Scheduler received {event} while {state}. "
            f"Call init() before delivering events and none after shutdown()."
        )


def _event(func: F) -> F:
    """Lifecycle check, unknown-id containment and optional invariant check."""

    @functools.wraps(func)
    def wrapper(self: "Scheduler", now: float, *args):
        if self._state != STATE_RUNNING:
            raise SchedulerStateError(func.__name__, self._state)
        try:
            result = func(self, now, *args)
        except UnknownEntityError as exc:
            self.unknown_lookups += 1
            logger.warning("%s at t=%.2f dropped: %s", func.__name__, now, exc)
            result = None
        if self.config.check_invariants:
            self.ledger.check_invariants()
        return result

    return wrapper  # type: ignore[return-value]


class Scheduler:
    """
    One scheduler instance bound to one harness and one policy.

    Attributes (readable by tests once init() has run):
        catalog, ledger, power, placement, consolidation, recovery
        policy           : the SchedulingPolicy in use
        completions      : task completions handled
        unknown_lookups  : events dropped for unknown ids
        memory_warnings  : capacity-overflow advisories received
        arrivals         : arrival time of every placed task still running
    """

    def __init__(
        self,
        harness: ClusterHarness,
        policy: Union[str, SchedulingPolicy] = "greedy",
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self.config = config or SchedulerConfig()
        self.harness = harness
        self.policy = build_policy(policy, self.config) if isinstance(policy, str) else policy

        self._state = STATE_NEW
        self.arrivals: Dict[int, float] = {}
        self.completions = 0
        self.unknown_lookups = 0
        self.memory_warnings = 0

    @property
    def state(self) -> str:
        return self._state

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    def init(self, now: float = 0.0) -> None:
        """Discover the fleet, wire the engines and let the policy set up tiers."""
        if self._state != STATE_NEW:
            raise SchedulerStateError("init", self._state)

        self.catalog = ResourceCatalog(self.harness)
        self.ledger = PlacementLedger(
            {m: self.catalog.capacity_of(m) for m in self.catalog.machine_ids()}
        )
        self.power = PowerManager(self.catalog, self.ledger, self.harness, self.config)
        self.placement = PlacementEngine(
            self.harness, self.catalog, self.ledger, self.power, self.policy,
        )
        self.consolidation = ConsolidationEngine(
            self.harness, self.catalog, self.ledger, self.power, self.placement, self.config,
        )
        self.recovery = ViolationRecoveryHandler(
            self.harness, self.ledger, self.power, self.placement, self.consolidation,
        )
        self.policy.bind(PolicyContext(
            harness=self.harness,
            catalog=self.catalog,
            ledger=self.ledger,
            power=self.power,
            consolidation=self.consolidation,
            config=self.config,
        ))

        self._state = STATE_RUNNING
        self.policy.init(now)
        logger.info(
            "Scheduler initialised: policy=%s machines=%d", self.policy.name,
            self.catalog.machine_count(),
        )

    # ── Inbound events ────────────────────────────────────────────────────────

    @_event
    def on_task_arrival(self, now: float, task_id: int) -> PlacementOutcome:
        outcome = self.placement.place(task_id, now)
        if outcome.status is not PlacementStatus.VIOLATION:
            self.arrivals.setdefault(task_id, now)
        return outcome

    @_event
    def on_task_completion(self, now: float, task_id: int) -> None:
        removed = self.ledger.record_removal(task_id)
        self.recovery.deferred.pop(task_id, None)
        arrived = self.arrivals.pop(task_id, None)
        if removed is None:
            self.unknown_lookups += 1
            logger.warning("Completion for untracked task %d at t=%.2f; ignored.", task_id, now)
            return
        _, machine_id = removed
        self.completions += 1
        response_time = None if arrived is None else max(now - arrived, 0.0)
        self.policy.on_task_completion(now, task_id, machine_id, response_time, self.completions)

    @_event
    def on_periodic_tick(self, now: float) -> None:
        self.policy.on_tick(now)

    @_event
    def on_migration_complete(self, now: float, vm_id: int) -> None:
        if not self.consolidation.on_migration_complete(vm_id, now, self.policy.active_floor()):
            self.unknown_lookups += 1

    @_event
    def on_power_state_change_complete(self, now: float, machine_id: int) -> None:
        for callback in self.power.on_state_change_complete(machine_id, now):
            callback(now)
        if (
            self.power.tier(machine_id) is not PowerState.ACTIVE
            and not self.power.is_pending(machine_id)
        ):
            self.recovery.release(machine_id)

    @_event
    def on_service_level_risk(self, now: float, task_id: int) -> bool:
        unknown_before = self.recovery.unknown_tasks
        handled = self.recovery.handle(task_id, now)
        self.unknown_lookups += self.recovery.unknown_tasks - unknown_before
        return handled

    @_event
    def on_capacity_overflow(self, now: float, machine_id: int) -> None:
        info = self.catalog.machine_info(machine_id)
        self.memory_warnings += 1
        logger.warning(
            "Capacity overflow on machine %d at t=%.2f: %d/%dMB, %d tasks",
            machine_id, now, info.memory_used, info.memory_size, info.active_tasks,
        )

    # ── Shutdown ──────────────────────────────────────────────────────────────

    def shutdown(self, now: float) -> SchedulerReport:
        """
        Drain every tracked task, shut every VM down, power every machine
        off and return the end-of-run report.
        """
        if self._state != STATE_RUNNING:
            raise SchedulerStateError("shutdown", self._state)

        report = self.report(now)

        for task_id in self.ledger.tracked_tasks():
            self.harness.unassign_task(self.ledger.vm_of(task_id), task_id)
            self.ledger.record_removal(task_id)
        for vm_id in self.ledger.vm_ids():
            self.ledger.finish_vm_migration(vm_id)
        self.consolidation.pending.clear()
        self.recovery.deferred.clear()
        self.power.power_off_all(now)

        self._state = STATE_SHUT_DOWN
        logger.info("Scheduler shut down at t=%.2f\n%s", now, report.render())
        return report

    def report(self, now: float) -> SchedulerReport:
        """Snapshot of the run so far. shutdown() returns the final one."""
        return SchedulerReport(
            policy=self.policy.name,
            finished_at=now,
            total_energy=self.harness.cluster_energy(),
            sla_compliance={sla.value: self.harness.sla_compliance(sla) for sla in SLAClass},
            violations={sla.value: self.placement.violations.get(sla, 0) for sla in SLAClass},
            placements=self.placement.placements,
            migrations=self.consolidation.migrations,
            activations=self.power.activations,
            deactivations=self.power.deactivations,
            recovery_attempts=self.recovery.attempts,
            recovery_failures=self.recovery.failures,
            unknown_lookups=self.unknown_lookups,
        )

    def __repr__(self) -> str:
        return (
            f"Scheduler(policy={self.policy.name!r}, state={self._state!r}, "
            f"completions={self.completions})"
        )
