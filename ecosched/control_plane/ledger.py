"""
ecosched/control_plane/ledger.py
────────────────────────────────
PlacementLedger: the scheduler's own bookkeeping of where everything is.

The harness owns the truth about machines and VMs. The ledger is what the
scheduler *believes*, updated synchronously with every command it issues:

  task → vm, task → machine, task → memory
  machine → tracked memory used, machine → task set, machine → vm set
  vm → VMRecord (type, arch, host, tasks, in-flight migration)

Every policy reads utilisation from here rather than from the harness so
that two placements issued inside one event see each other.

Optimistic migration
─────────────────────
move_vm() moves a VM (and its tasks' memory) to the target machine the
moment the migration is *requested*. The VMRecord remembers the source in
migrating_from until finish_vm_migration() is called on the completion
event. While that field is set, neither machine may be powered down.

Invariant breaks
─────────────────
Negative memory, a task tracked twice, or tracked memory above capacity
cannot be repaired locally. They raise LedgerInvariantError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from ecosched.shared.models import CPUArch, VMType

logger = logging.getLogger(__name__)


class LedgerInvariantError(AssertionError):
    """
    Raised when the ledger would enter a state it cannot recover from.

    Attributes:
        detail: What broke, with the ids involved.
    """

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Placement ledger invariant broken: {detail}")


@dataclass
class VMRecord:
    """One VM as the scheduler tracks it."""
    vm_id: int
    vm_type: VMType
    cpu: CPUArch
    machine_id: int
    tasks: Set[int] = field(default_factory=set)
    migrating_from: Optional[int] = None

    @property
    def migrating(self) -> bool:
        return self.migrating_from is not None


class PlacementLedger:
    """
    Core-owned placement bookkeeping.

    Args:
        capacity: machine_id → memory capacity in MB. Fixes the machine set.
    """

    def __init__(self, capacity: Dict[int, int]) -> None:
        self._capacity: Dict[int, int] = dict(capacity)
        self._memory_used: Dict[int, int] = {m: 0 for m in capacity}
        self._machine_tasks: Dict[int, Set[int]] = {m: set() for m in capacity}
        self._machine_vms: Dict[int, Set[int]] = {m: set() for m in capacity}

        self._task_vm: Dict[int, int] = {}
        self._task_memory: Dict[int, int] = {}
        self._vms: Dict[int, VMRecord] = {}

    # ── VM registry ───────────────────────────────────────────────────────────

    def register_vm(self, vm_id: int, vm_type: VMType, cpu: CPUArch, machine_id: int) -> VMRecord:
        if vm_id in self._vms:
            raise LedgerInvariantError(f"VM {vm_id} registered twice")
        self._require_machine(machine_id)
        record = VMRecord(vm_id=vm_id, vm_type=vm_type, cpu=cpu, machine_id=machine_id)
        self._vms[vm_id] = record
        self._machine_vms[machine_id].add(vm_id)
        logger.debug("ledger: VM %d (%s/%s) on machine %d",
                     vm_id, vm_type.value, cpu.value, machine_id)
        return record

    def drop_vm(self, vm_id: int) -> None:
        record = self._vms.get(vm_id)
        if record is None:
            return
        if record.tasks:
            raise LedgerInvariantError(
                f"VM {vm_id} dropped while holding tasks {sorted(record.tasks)}"
            )
        self._machine_vms[record.machine_id].discard(vm_id)
        del self._vms[vm_id]

    def vm(self, vm_id: int) -> Optional[VMRecord]:
        return self._vms.get(vm_id)

    def vm_ids(self) -> List[int]:
        return sorted(self._vms)

    def vms_on(self, machine_id: int) -> List[int]:
        return sorted(self._machine_vms.get(machine_id, ()))

    def find_vm(self, machine_id: int, vm_type: VMType) -> Optional[int]:
        """Lowest-id VM of this type on the machine that is not migrating."""
        for vm_id in self.vms_on(machine_id):
            record = self._vms[vm_id]
            if record.vm_type is vm_type and not record.migrating:
                return vm_id
        return None

    # ── Task bookkeeping ──────────────────────────────────────────────────────

    def record_assignment(self, task_id: int, vm_id: int, memory: int) -> None:
        if task_id in self._task_vm:
            raise LedgerInvariantError(
                f"task {task_id} already in VM {self._task_vm[task_id]}, "
                f"cannot also record it in VM {vm_id}"
            )
        record = self._vms.get(vm_id)
        if record is None:
            raise LedgerInvariantError(f"task {task_id} assigned to unregistered VM {vm_id}")
        machine_id = record.machine_id
        new_used = self._memory_used[machine_id] + memory
        if new_used > self._capacity[machine_id]:
            raise LedgerInvariantError(
                f"machine {machine_id} would track {new_used}MB "
                f"of {self._capacity[machine_id]}MB"
            )
        record.tasks.add(task_id)
        self._task_vm[task_id] = vm_id
        self._task_memory[task_id] = memory
        self._memory_used[machine_id] = new_used
        self._machine_tasks[machine_id].add(task_id)

    def record_removal(self, task_id: int) -> Optional[Tuple[int, int]]:
        """
        Forget a task. Returns (vm_id, machine_id) it was on, or None when
        the ledger never tracked it.
        """
        vm_id = self._task_vm.pop(task_id, None)
        if vm_id is None:
            return None
        record = self._vms[vm_id]
        machine_id = record.machine_id
        memory = self._task_memory.pop(task_id)
        record.tasks.discard(task_id)
        self._machine_tasks[machine_id].discard(task_id)
        self._memory_used[machine_id] -= memory
        if self._memory_used[machine_id] < 0:
            raise LedgerInvariantError(
                f"machine {machine_id} memory went negative removing task {task_id}"
            )
        return vm_id, machine_id

    def move_task(self, task_id: int, dst_vm_id: int) -> int:
        """Move one task between VMs. Returns the source machine id."""
        memory = self._task_memory.get(task_id)
        if memory is None:
            raise LedgerInvariantError(f"cannot move untracked task {task_id}")
        _, src_machine = self.record_removal(task_id)
        self.record_assignment(task_id, dst_vm_id, memory)
        return src_machine

    # ── VM migration ──────────────────────────────────────────────────────────

    def move_vm(self, vm_id: int, target_machine_id: int) -> int:
        """
        Optimistically re-home a VM and its tasks. Returns the source machine.
        """
        record = self._vms.get(vm_id)
        if record is None:
            raise LedgerInvariantError(f"cannot migrate unregistered VM {vm_id}")
        if record.migrating:
            raise LedgerInvariantError(f"VM {vm_id} is already migrating")
        self._require_machine(target_machine_id)
        source = record.machine_id
        memory = sum(self._task_memory[t] for t in record.tasks)
        if self._memory_used[target_machine_id] + memory > self._capacity[target_machine_id]:
            raise LedgerInvariantError(
                f"VM {vm_id} ({memory}MB) does not fit machine {target_machine_id}"
            )

        self._memory_used[source] -= memory
        self._memory_used[target_machine_id] += memory
        self._machine_tasks[source] -= record.tasks
        self._machine_tasks[target_machine_id] |= record.tasks
        self._machine_vms[source].discard(vm_id)
        self._machine_vms[target_machine_id].add(vm_id)
        record.machine_id = target_machine_id
        record.migrating_from = source
        return source

    def finish_vm_migration(self, vm_id: int) -> Optional[int]:
        """Clear the in-flight flag. Returns the source machine, if any."""
        record = self._vms.get(vm_id)
        if record is None or not record.migrating:
            return None
        source = record.migrating_from
        record.migrating_from = None
        return source

    def migration_pending_on(self, machine_id: int) -> bool:
        """True if a VM is migrating to or from this machine."""
        for record in self._vms.values():
            if not record.migrating:
                continue
            if record.machine_id == machine_id or record.migrating_from == machine_id:
                return True
        return False

    # ── Reads ─────────────────────────────────────────────────────────────────

    def _require_machine(self, machine_id: int) -> None:
        if machine_id not in self._capacity:
            raise LedgerInvariantError(f"unknown machine {machine_id}")

    def vm_of(self, task_id: int) -> Optional[int]:
        return self._task_vm.get(task_id)

    def machine_of(self, task_id: int) -> Optional[int]:
        vm_id = self._task_vm.get(task_id)
        return None if vm_id is None else self._vms[vm_id].machine_id

    def memory_of(self, task_id: int) -> Optional[int]:
        return self._task_memory.get(task_id)

    def memory_used(self, machine_id: int) -> int:
        return self._memory_used[machine_id]

    def capacity(self, machine_id: int) -> int:
        return self._capacity[machine_id]

    def headroom(self, machine_id: int) -> int:
        return self._capacity[machine_id] - self._memory_used[machine_id]

    def utilization(self, machine_id: int) -> float:
        return self._memory_used[machine_id] / self._capacity[machine_id]

    def tasks_on(self, machine_id: int) -> List[int]:
        return sorted(self._machine_tasks.get(machine_id, ()))

    def task_count(self, machine_id: int) -> int:
        return len(self._machine_tasks.get(machine_id, ()))

    def tracked_tasks(self) -> List[int]:
        return sorted(self._task_vm)

    def is_tracked(self, task_id: int) -> bool:
        return task_id in self._task_vm

    # ── Consistency ───────────────────────────────────────────────────────────

    def check_invariants(self) -> None:
        """
        Recompute every derived total from the VM records and compare.

        Raises LedgerInvariantError on the first mismatch.
        """
        seen: Dict[int, int] = {}
        expected_memory = {m: 0 for m in self._capacity}
        for record in self._vms.values():
            for task_id in record.tasks:
                if task_id in seen:
                    raise LedgerInvariantError(
                        f"task {task_id} in VMs {seen[task_id]} and {record.vm_id}"
                    )
                seen[task_id] = record.vm_id
                expected_memory[record.machine_id] += self._task_memory[task_id]

        if seen != self._task_vm:
            raise LedgerInvariantError("task → VM map disagrees with VM records")

        for machine_id, expected in expected_memory.items():
            tracked = self._memory_used[machine_id]
            if tracked != expected:
                raise LedgerInvariantError(
                    f"machine {machine_id} tracks {tracked}MB, tasks sum to {expected}MB"
                )
            if tracked > self._capacity[machine_id]:
                raise LedgerInvariantError(
                    f"machine {machine_id} over capacity: {tracked}MB"
                )

    def __repr__(self) -> str:
        return (
            f"PlacementLedger(machines={len(self._capacity)}, "
            f"vms={len(self._vms)}, tasks={len(self._task_vm)})"
        )
