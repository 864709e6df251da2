"""
ecosched/control_plane/recovery.py
──────────────────────────────────
ViolationRecoveryHandler: reacts to a service-level-risk warning.

handle(task_id) walks four steps:
  1. Resolve the task's current machine from the ledger when the caller
     does not know it.
  2. Rank the other ACTIVE, compatible machines with the policy's own
     ordering and move the task to the first that takes it.
  3. Otherwise wake the best STANDBY (then OFF) compatible machine and
     register a deferred relocation that runs once the harness confirms
     the machine is ACTIVE.
  4. Otherwise report failure. That is a structural capacity shortfall,
     so it is counted and returned, never swallowed.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ecosched.cluster.harness import ClusterHarness
from ecosched.control_plane.consolidation import ConsolidationEngine
from ecosched.control_plane.ledger import PlacementLedger
from ecosched.control_plane.placement import PlacementEngine
from ecosched.control_plane.power import PowerManager
from ecosched.shared.models import PowerState

logger = logging.getLogger(__name__)


class ViolationRecoveryHandler:
    """
    Attributes:
        attempts:       handle() calls for tasks the ledger knows.
        failures:       handle() calls that found no machine at all.
        unknown_tasks:  handle() calls for tasks the ledger does not track.
        deferred:       task_id → machine woken for it, until the move runs.
    """

    def __init__(
        self,
        harness: ClusterHarness,
        ledger: PlacementLedger,
        power: PowerManager,
        placement: PlacementEngine,
        consolidation: ConsolidationEngine,
    ) -> None:
        self._harness = harness
        self._ledger = ledger
        self._power = power
        self._placement = placement
        self._consolidation = consolidation

        self.attempts = 0
        self.failures = 0
        self.unknown_tasks = 0
        self.deferred: Dict[int, int] = {}

    def handle(self, task_id: int, now: float, known_machine: Optional[int] = None) -> bool:
        """Try to get the task off its current machine. True if handled."""
        machine_id = self._ledger.machine_of(task_id)
        if machine_id is None:
            self.unknown_tasks += 1
            logger.warning("Service-level risk for untracked task %d; dropped.", task_id)
            return False
        if known_machine is not None and known_machine != machine_id:
            logger.debug("Task %d reported on machine %d, ledger has %d",
                         task_id, known_machine, machine_id)
        self.attempts += 1

        if task_id in self.deferred:
            logger.debug("Task %d already waiting on machine %d", task_id, self.deferred[task_id])
            return True

        vm = self._ledger.vm(self._ledger.vm_of(task_id))
        if vm is not None and vm.migrating:
            logger.debug("Task %d is already migrating; nothing to do", task_id)
            return True

        req = self._harness.task_requirements(task_id)

        for candidate in self._placement.candidates(req, PowerState.ACTIVE, exclude=machine_id):
            if self._ledger.migration_pending_on(candidate):
                continue
            if self._consolidation.move(task_id, candidate, now) is not None:
                logger.info("Recovered task %d: machine %d → %d", task_id, machine_id, candidate)
                return True

        for state in (PowerState.STANDBY, PowerState.OFF):
            woken = self._placement.candidates(req, state)
            if not woken:
                continue
            target = woken[0]
            self._power.activate(target, now)
            self.deferred[task_id] = target
            self._power.when_active(
                target, lambda t, task=task_id, m=target: self._relocate_deferred(task, m, t),
            )
            logger.info("Recovery for task %d waiting on machine %d (%s → active)",
                        task_id, target, state.value)
            return True

        self.failures += 1
        logger.warning(
            "Recovery failed for task %d (%s, %dMB): no compatible machine with capacity",
            task_id, req.required_cpu.value, req.memory,
        )
        return False

    def release(self, machine_id: int) -> List[int]:
        """
        Forget deferred relocations waiting on a machine that will not come
        up. Returns the released task ids; their next warning starts over.
        """
        released = [t for t, m in self.deferred.items() if m == machine_id]
        for task_id in released:
            del self.deferred[task_id]
        if released:
            logger.warning("Machine %d did not come up; released deferred tasks %s",
                           machine_id, released)
        return released

    def _relocate_deferred(self, task_id: int, machine_id: int, now: float) -> None:
        self.deferred.pop(task_id, None)
        if not self._ledger.is_tracked(task_id):
            logger.debug("Deferred relocation of task %d skipped: task finished", task_id)
            return
        if self._ledger.machine_of(task_id) == machine_id:
            return
        req = self._harness.task_requirements(task_id)
        if not self._placement.fits(machine_id, req):
            logger.warning("Deferred relocation of task %d: machine %d filled up meanwhile",
                           task_id, machine_id)
            return
        self._consolidation.move(task_id, machine_id, now)

    def __repr__(self) -> str:
        return (
            f"ViolationRecoveryHandler(attempts={self.attempts}, "
            f"failures={self.failures}, deferred={len(self.deferred)})"
        )
