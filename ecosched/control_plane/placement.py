"""
ecosched/control_plane/placement.py
───────────────────────────────────
PlacementEngine: decides WHICH VM on WHICH machine a new task goes to.

How place() works
──────────────────
1. Resolve the task's requirements from the harness (arch, VM type,
   memory, GPU, SLA → priority).

2. Structural check. If no machine in the fleet could ever host the task
   (wrong arch, no GPU, too big) it is a violation right away.

3. ACTIVE search. Filter ACTIVE machines by arch, GPU and tracked memory
   headroom, order them with the policy's rank(), and try each:
     - reuse a non-migrating VM of the task's type on that machine, or
       create + attach a new one
     - assign_task(); anything but ACCEPTED → next candidate

4. STANDBY search. Same filter over STANDBY machines; activate the first
   in rank order and assign straight away. The harness accepts work on a
   machine whose requested state is ACTIVE.

5. OFF search. As step 4, over powered-off machines.

6. Otherwise record a service-level violation. The task id lands in
   `unplaced` and the per-class counter goes up. Nothing is dropped silently.

Ledger updates happen in the same call as the accepted assignment, so the
next placement in the same event already sees the memory as used.

relocate() is the task-level move used by consolidation and recovery:
unassign from the source VM, assign on the destination, and roll back to
the source VM if the destination rejects.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING, List, Optional, Tuple

from ecosched.cluster.catalog import ResourceCatalog
from ecosched.cluster.harness import ClusterHarness
from ecosched.control_plane.ledger import PlacementLedger
from ecosched.control_plane.power import PowerManager
from ecosched.control_plane.requirements import priority_of, resolve_task, structural_mismatch
from ecosched.shared.models import (
    AssignResult,
    PlacementOutcome,
    PlacementStatus,
    PowerState,
    SLAClass,
    TaskRequirements,
)

if TYPE_CHECKING:
    from ecosched.control_plane.policies import SchedulingPolicy

logger = logging.getLogger(__name__)


class PlacementEngine:
    """
    Attributes:
        violations: SLAClass → number of tasks that could not be placed or
                    were lost during a failed move.
        unplaced:   Task ids declared violations, in order.
        placements: Accepted first-time placements.
        relocations: Successful task-level moves.
    """

    def __init__(
        self,
        harness: ClusterHarness,
        catalog: ResourceCatalog,
        ledger: PlacementLedger,
        power: PowerManager,
        policy: "SchedulingPolicy",
    ) -> None:
        self._harness = harness
        self._catalog = catalog
        self._ledger = ledger
        self._power = power
        self._policy = policy

        self.violations: Counter = Counter()
        self.unplaced: List[int] = []
        self.placements = 0
        self.relocations = 0

    # ── Candidate filtering ───────────────────────────────────────────────────

    def fits(self, machine_id: int, req: TaskRequirements) -> bool:
        """Arch match, GPU if needed, and tracked headroom for the task."""
        if self._catalog.arch_of(machine_id) is not req.required_cpu:
            return False
        if req.gpu_capable and not self._catalog.has_gpu(machine_id):
            return False
        return self._ledger.headroom(machine_id) >= req.memory

    def candidates(self, req: TaskRequirements, state: PowerState,
                   exclude: Optional[int] = None) -> List[int]:
        """Machines in the given tier that could take the task, in rank order."""
        found = [
            m for m in self._power.machines_in(state)
            if m != exclude and self.fits(m, req)
        ]
        return self._policy.rank(found, req)

    # ── VM handling ───────────────────────────────────────────────────────────

    def vm_for(self, machine_id: int, req: TaskRequirements) -> int:
        """A VM of the task's type on the machine, created if necessary."""
        vm_id = self._ledger.find_vm(machine_id, req.required_vm)
        if vm_id is not None:
            return vm_id
        vm_id = self._harness.create_vm(req.required_vm, req.required_cpu)
        self._harness.attach_vm(vm_id, machine_id)
        self._ledger.register_vm(vm_id, req.required_vm, req.required_cpu, machine_id)
        logger.debug("Created VM %d (%s) on machine %d", vm_id, req.required_vm.value, machine_id)
        return vm_id

    def _try_assign(self, machine_id: int, req: TaskRequirements) -> Tuple[AssignResult, int]:
        vm_id = self.vm_for(machine_id, req)
        result = self._harness.assign_task(vm_id, req.task_id, priority_of(req))
        if result.accepted:
            self._ledger.record_assignment(req.task_id, vm_id, req.memory)
        else:
            logger.warning(
                "assign_task(vm=%d, task=%d) on machine %d rejected: %s",
                vm_id, req.task_id, machine_id, result.value,
            )
        return result, vm_id

    # ── Placement ─────────────────────────────────────────────────────────────

    def place(self, task_id: int, now: float) -> PlacementOutcome:
        """
        Place a newly arrived task.

        Raises:
            UnknownEntityError: the harness does not know task_id.
        """
        req = resolve_task(self._harness, task_id)

        if self._ledger.is_tracked(task_id):
            logger.warning("Task %d arrived twice; keeping its current placement.", task_id)
            return PlacementOutcome(
                task_id=task_id,
                status=PlacementStatus.ASSIGNED,
                machine_id=self._ledger.machine_of(task_id),
                vm_id=self._ledger.vm_of(task_id),
            )

        reason = structural_mismatch(req, self._catalog)
        if reason is not None:
            return self._violation(req, reason, attempts=0)

        attempts = 0
        for machine_id in self.candidates(req, PowerState.ACTIVE):
            attempts += 1
            result, vm_id = self._try_assign(machine_id, req)
            if result.accepted:
                return self._assigned(req, machine_id, vm_id, attempts)

        for state in (PowerState.STANDBY, PowerState.OFF):
            for machine_id in self.candidates(req, state):
                self._power.activate(machine_id, now)
                attempts += 1
                result, vm_id = self._try_assign(machine_id, req)
                if result.accepted:
                    return self._assigned(req, machine_id, vm_id, attempts)

        return self._violation(req, "no compatible machine with free capacity", attempts)

    def _assigned(self, req: TaskRequirements, machine_id: int, vm_id: int,
                  attempts: int) -> PlacementOutcome:
        self.placements += 1
        logger.info(
            "Placed task %d (%s, %dMB, %s) on machine %d VM %d",
            req.task_id, req.required_cpu.value, req.memory, req.sla.value, machine_id, vm_id,
        )
        return PlacementOutcome(
            task_id=req.task_id,
            status=PlacementStatus.ASSIGNED,
            machine_id=machine_id,
            vm_id=vm_id,
            attempts=attempts,
        )

    def _violation(self, req: TaskRequirements, reason: str, attempts: int) -> PlacementOutcome:
        self.record_violation(req.task_id, req.sla, reason)
        return PlacementOutcome(
            task_id=req.task_id,
            status=PlacementStatus.VIOLATION,
            attempts=attempts,
            reason=reason,
        )

    def record_violation(self, task_id: int, sla: SLAClass, reason: str) -> None:
        if sla.has_violation_semantics:
            self.violations[sla] += 1
        self.unplaced.append(task_id)
        logger.warning("SLA violation: task %d (%s) unplaced, %s", task_id, sla.value, reason)

    # ── Task-level move ───────────────────────────────────────────────────────

    def relocate(self, task_id: int, dst_machine: int, now: float) -> AssignResult:
        """
        Move one task to dst_machine with unassign + assign back to back.

        On rejection the task is re-assigned to its source VM. If even that
        fails the task is recorded as a violation.
        """
        src_vm = self._ledger.vm_of(task_id)
        memory = self._ledger.memory_of(task_id)
        if src_vm is None or memory is None:
            return AssignResult.REJECTED_INCOMPATIBLE
        req = resolve_task(self._harness, task_id)

        self._harness.unassign_task(src_vm, task_id)
        self._ledger.record_removal(task_id)

        result, dst_vm = self._try_assign(dst_machine, req)
        if result.accepted:
            self.relocations += 1
            logger.info("Moved task %d to machine %d VM %d at t=%.2f",
                        task_id, dst_machine, dst_vm, now)
            return result

        rollback = self._harness.assign_task(src_vm, task_id, priority_of(req))
        if rollback.accepted:
            self._ledger.record_assignment(task_id, src_vm, memory)
        else:
            self.record_violation(task_id, req.sla, f"lost during move ({rollback.value})")
        return result

    def __repr__(self) -> str:
        return (
            f"PlacementEngine(placements={self.placements}, "
            f"violations={sum(self.violations.values())})"
        )
