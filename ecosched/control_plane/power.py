"""
ecosched/control_plane/power.py
───────────────────────────────
PowerManager: machine power tiers and the pending-request side-table.

State machine per machine
──────────────────────────
    OFF     ──activate──▶ ACTIVE
    STANDBY ──activate──▶ ACTIVE
    ACTIVE  ──deactivate─▶ STANDBY | OFF

Every transition is a request to the harness. The manager updates its own
tier map immediately (optimistic) and records a PendingPowerChange keyed by
machine id. on_state_change_complete() clears the entry and compares the
reported state against what was asked for; if they differ, the reported
state wins and a warning is logged. Tests assert pending is empty after the
harness has drained, which is how "no permanent divergence" is checked.

Tier sizing
────────────
compute_tier_sizes() turns the fleet size and the in-flight workload into a
desired running / intermediate split. adjust_tiers() compares that and the
current system load against two hysteresis thresholds:

    load > high_load_threshold  → grow ACTIVE (STANDBY first, then OFF)
    load < low_load_threshold   → shrink ACTIVE by putting idle machines to
                                  sleep, never below the floor

Only machines with zero tracked tasks and no migration in flight may be
deactivated. Idle machines whose arch matches running work go first; idle
machines of an arch nobody is using are kept, since waking a matched
machine back up later is the expensive case.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import numpy as np

from ecosched.cluster.catalog import ResourceCatalog
from ecosched.cluster.harness import ClusterHarness
from ecosched.control_plane.ledger import PlacementLedger
from ecosched.shared.config import SchedulerConfig
from ecosched.shared.models import CPUArch, PowerState

logger = logging.getLogger(__name__)

MAX_PROACTIVE_ACTIVATIONS: int = 4
"""Hard cap on machines woken by one proactive check."""

ActivationCallback = Callable[[float], None]


@dataclass
class PendingPowerChange:
    """A power request the harness has not confirmed yet."""
    machine_id: int
    requested: PowerState
    previous: PowerState
    requested_at: float


def compute_tier_sizes(total: int, workload: int, config: SchedulerConfig) -> Tuple[int, int]:
    """
    Desired (running, intermediate) tier sizes.

    running      = max(total × running_fraction, min_running, workload/2 + 1, 3)
    intermediate = max(total × intermediate_fraction, min_intermediate)

    Both are clamped so that running + intermediate ≤ total.
    """
    running = max(int(total * config.running_tier_fraction), config.min_running_machines)
    intermediate = max(
        int(total * config.intermediate_tier_fraction), config.min_intermediate_machines
    )
    running = max(running, workload // 2 + 1, 3)
    running = min(running, total)
    intermediate = min(intermediate, total - running)
    return running, intermediate


def plan_initial_tiers(
    machines_by_arch: Dict[CPUArch, List[int]],
    config: SchedulerConfig,
) -> Dict[int, PowerState]:
    """
    Initial tier of every machine for the tiered policy.

    Running slots are first spread evenly across architectures so that
    every arch has at least one ACTIVE machine, then filled in arch/id
    order. The next block goes to STANDBY, the remainder to OFF.
    """
    total = sum(len(ids) for ids in machines_by_arch.values())
    running, intermediate = compute_tier_sizes(total, 0, config)

    plan: Dict[int, PowerState] = {}
    per_arch = max(running // max(len(machines_by_arch), 1), 1)
    for ids in machines_by_arch.values():
        for machine_id in ids[:per_arch]:
            if len(plan) < running:
                plan[machine_id] = PowerState.ACTIVE

    active = len(plan)
    standby = 0
    for ids in machines_by_arch.values():
        for machine_id in ids:
            if machine_id in plan:
                continue
            if active < running:
                plan[machine_id] = PowerState.ACTIVE
                active += 1
            elif standby < intermediate:
                plan[machine_id] = PowerState.STANDBY
                standby += 1
            else:
                plan[machine_id] = PowerState.OFF
    return plan


class PowerManager:
    """
    Owns the scheduler's view of machine power tiers.

    Attributes:
        pending:        machine_id → PendingPowerChange, cleared on completion.
        activations:    Activation requests issued.
        deactivations:  Deactivation requests issued.
        reconciliations: Completions whose reported state differed from the
                        requested one.
    """

    def __init__(
        self,
        catalog: ResourceCatalog,
        ledger: PlacementLedger,
        harness: ClusterHarness,
        config: SchedulerConfig,
    ) -> None:
        self._catalog = catalog
        self._ledger = ledger
        self._harness = harness
        self._config = config

        self._tier: Dict[int, PowerState] = {
            m: catalog.power_state(m) for m in catalog.machine_ids()
        }
        self.pending: Dict[int, PendingPowerChange] = {}
        self._on_active: Dict[int, List[ActivationCallback]] = defaultdict(list)
        self._last_adjust: Optional[float] = None

        self.activations = 0
        self.deactivations = 0
        self.reconciliations = 0

    # ── Tier reads ────────────────────────────────────────────────────────────

    def tier(self, machine_id: int) -> PowerState:
        return self._tier[machine_id]

    def machines_in(self, state: PowerState) -> List[int]:
        return [m for m, s in sorted(self._tier.items()) if s is state]

    def active_machines(self) -> List[int]:
        return self.machines_in(PowerState.ACTIVE)

    def is_pending(self, machine_id: int) -> bool:
        return machine_id in self.pending

    def system_load(self) -> float:
        """Tracked memory used over memory capacity, across ACTIVE machines."""
        active = self.active_machines()
        if not active:
            return 0.0
        used = np.array([self._ledger.memory_used(m) for m in active], dtype=float)
        capacity = np.array([self._ledger.capacity(m) for m in active], dtype=float)
        return float(used.sum() / capacity.sum())

    def busy_archs(self) -> Set[CPUArch]:
        """Architectures that currently run at least one tracked task."""
        return {
            self._catalog.arch_of(m) for m in self._catalog.machine_ids()
            if self._ledger.task_count(m) > 0
        }

    # ── Requests ──────────────────────────────────────────────────────────────

    def _request(self, machine_id: int, state: PowerState, now: float) -> None:
        previous = self._tier[machine_id]
        self.pending[machine_id] = PendingPowerChange(
            machine_id=machine_id, requested=state, previous=previous, requested_at=now,
        )
        self._tier[machine_id] = state
        self._catalog.request_power_state(machine_id, state)

    def activate(self, machine_id: int, now: float) -> bool:
        """Request ACTIVE. Returns False if the machine is already (going) ACTIVE."""
        if self._tier[machine_id] is PowerState.ACTIVE:
            return False
        logger.info(
            "Activating machine %d (%s → active) at t=%.2f",
            machine_id, self._tier[machine_id].value, now,
        )
        self._request(machine_id, PowerState.ACTIVE, now)
        self.activations += 1
        return True

    def can_deactivate(self, machine_id: int) -> bool:
        return (
            self._tier[machine_id] is PowerState.ACTIVE
            and self._ledger.task_count(machine_id) == 0
            and not self._ledger.migration_pending_on(machine_id)
            and not self._on_active.get(machine_id)
        )

    def deactivate(self, machine_id: int, now: float, state: Optional[PowerState] = None) -> bool:
        """
        Shut down the machine's VMs and request a low-power state.

        Returns False (and does nothing) unless the machine is ACTIVE, holds
        no tracked tasks and has no migration in flight.
        """
        state = state or self._config.idle_power_state
        if not self.can_deactivate(machine_id):
            return False
        for vm_id in self._ledger.vms_on(machine_id):
            self._harness.shutdown_vm(vm_id)
            self._ledger.drop_vm(vm_id)
        logger.info("Deactivating machine %d (active → %s) at t=%.2f",
                    machine_id, state.value, now)
        self._request(machine_id, state, now)
        self.deactivations += 1
        return True

    def apply_plan(self, plan: Dict[int, PowerState], now: float) -> None:
        """Bring every machine to its planned tier. Used once, at init."""
        for machine_id, state in sorted(plan.items()):
            if self._tier[machine_id] is state:
                continue
            if state is PowerState.ACTIVE:
                self.activate(machine_id, now)
            else:
                self.deactivate(machine_id, now, state)

    def power_off_all(self, now: float) -> int:
        """
        Final shutdown: drop deferred callbacks and send every machine that
        is not already OFF to OFF. Machines still holding tasks are skipped.
        Returns the number of requests issued.
        """
        self._on_active.clear()
        issued = 0
        for machine_id, state in sorted(self._tier.items()):
            if state is PowerState.OFF:
                continue
            if state is PowerState.ACTIVE:
                issued += int(self.deactivate(machine_id, now, PowerState.OFF))
            else:
                self._request(machine_id, PowerState.OFF, now)
                issued += 1
        return issued

    # ── Completion ────────────────────────────────────────────────────────────

    def when_active(self, machine_id: int, callback: ActivationCallback) -> None:
        """Run callback(now) once the machine is confirmed ACTIVE."""
        self._on_active[machine_id].append(callback)

    def on_state_change_complete(self, machine_id: int, now: float) -> List[ActivationCallback]:
        """
        Reconcile the tier map with the harness and return the callbacks
        that became runnable. The caller runs them.
        """
        reported = self._catalog.power_state(machine_id)
        change = self.pending.pop(machine_id, None)
        expected = change.requested if change is not None else self._tier[machine_id]

        if reported is not expected:
            self.reconciliations += 1
            logger.warning(
                "Machine %d reported %s but %s was requested; adopting reported state.",
                machine_id, reported.value, expected.value,
            )
        self._tier[machine_id] = reported

        if reported is PowerState.ACTIVE:
            return self._on_active.pop(machine_id, [])
        if self._on_active.get(machine_id) and machine_id not in self.pending:
            dropped = self._on_active.pop(machine_id)
            logger.warning(
                "Machine %d settled in %s; dropping %d deferred relocation(s).",
                machine_id, reported.value, len(dropped),
            )
        return []

    # ── Tier policy ───────────────────────────────────────────────────────────

    def _deactivation_order(self, candidates: Iterable[int]) -> List[int]:
        busy = self.busy_archs()
        return sorted(
            candidates,
            key=lambda m: (self._catalog.arch_of(m) not in busy, m),
        )

    def idle_sweep(self, now: float, floor: Optional[int] = None) -> int:
        """
        Power down idle ACTIVE machines while the ACTIVE count stays above
        the floor. Returns the number of machines deactivated.
        """
        floor = self._config.min_active_machines if floor is None else floor
        idle = [
            m for m in self.active_machines()
            if self.can_deactivate(m) and not self.is_pending(m)
        ]
        done = 0
        for machine_id in self._deactivation_order(idle):
            if len(self.active_machines()) <= floor:
                break
            if self.deactivate(machine_id, now):
                done += 1
        return done

    def adjust_tiers(self, now: float, workload: int) -> Tuple[int, int]:
        """
        One hysteresis step. Returns (activated, deactivated).

        Rate-limited to one full adjustment per tier_adjust_interval_s.
        """
        if (
            self._last_adjust is not None
            and now - self._last_adjust < self._config.tier_adjust_interval_s
        ):
            return 0, 0
        self._last_adjust = now

        total = self._catalog.machine_count()
        desired, _ = compute_tier_sizes(
            total, int(workload * self._config.workload_safety_margin), self._config,
        )
        load = self.system_load()
        current = len(self.active_machines())
        logger.debug(
            "adjust_tiers: t=%.2f load=%.3f active=%d desired=%d",
            now, load, current, desired,
        )

        if load > self._config.high_load_threshold or current < desired:
            wanted = max(desired - current, 1 if load > self._config.high_load_threshold else 0)
            return self.grow(now, min(wanted, self._config.max_activations_per_adjust)), 0

        if load < self._config.low_load_threshold and current > desired:
            budget = min(current - desired, self._config.max_deactivations_per_adjust)
            idle = [
                m for m in self.active_machines()
                if self.can_deactivate(m) and not self.is_pending(m)
            ]
            done = 0
            for machine_id in self._deactivation_order(idle)[:budget]:
                if self.deactivate(machine_id, now):
                    done += 1
            return 0, done
        return 0, 0

    def grow(self, now: float, count: int) -> int:
        """Wake up to `count` machines: STANDBY before OFF, busy archs first."""
        if count <= 0:
            return 0
        busy = self.busy_archs()
        candidates = sorted(
            self.machines_in(PowerState.STANDBY) + self.machines_in(PowerState.OFF),
            key=lambda m: (
                self._tier[m] is PowerState.OFF,
                self._catalog.arch_of(m) not in busy,
                m,
            ),
        )
        woken = 0
        for machine_id in candidates[:count]:
            if self.activate(machine_id, now):
                woken += 1
        return woken

    def proactive_activate(self, now: float) -> int:
        """
        Wake a slice of the fleet when the running tier has shrunk below
        proactive_running_fraction of all machines.
        """
        total = self._catalog.machine_count()
        if len(self.active_machines()) >= total * self._config.proactive_running_fraction:
            return 0
        count = max(1, min(int(total * self._config.proactive_activation_fraction),
                           MAX_PROACTIVE_ACTIVATIONS))
        woken = self.grow(now, count)
        if woken:
            logger.info("Proactively activated %d machine(s) at t=%.2f", woken, now)
        return woken

    def __repr__(self) -> str:
        return (
            f"PowerManager(active={len(self.active_machines())}, "
            f"standby={len(self.machines_in(PowerState.STANDBY))}, "
            f"off={len(self.machines_in(PowerState.OFF))}, pending={len(self.pending)})"
        )
