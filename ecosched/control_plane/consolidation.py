"""
ecosched/control_plane/consolidation.py
───────────────────────────────────────
ConsolidationEngine: packs work onto fewer machines so idle ones can sleep.

One consolidation cycle
────────────────────────
  1. Rank ACTIVE machines by tracked utilisation, ascending (id tie-break).
  2. Split the ranking at its midpoint into a low half and a high half.
  3. Source: the least-utilised machine that hosts at least one task.
     Candidate: its smallest task by memory (lowest id on ties), skipping
     tasks whose VM is already migrating.
  4. Destination: scan the high half from the most utilised machine down
     and take the first one that matches the task's arch (and GPU), has
     the headroom, and is at least as full as the source.
  5. Move the task (see below).
  6. Idle sweep: every ACTIVE machine with zero tasks is powered down,
     unless that would take the ACTIVE count below the floor.

No destination is not an error. The cycle simply ends after the sweep.

Two ways to move
─────────────────
  Whole-VM  the task is the only one on its VM. request_migration() is
            issued, the ledger re-homes the VM immediately, and a
            PendingMigration is kept under the VM id until the harness
            reports completion. Only then may the source be powered down.
  Task-level the VM holds other tasks too. unassign + assign happen back to
            back through PlacementEngine.relocate(), with rollback.

Cost
─────
A cycle is O(machines × tasks). The policies decide how often to call it.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

from ecosched.cluster.catalog import ResourceCatalog
from ecosched.cluster.harness import ClusterHarness
from ecosched.control_plane.ledger import PlacementLedger
from ecosched.control_plane.placement import PlacementEngine
from ecosched.control_plane.power import PowerManager
from ecosched.shared.config import SchedulerConfig
from ecosched.shared.models import TaskRequirements

logger = logging.getLogger(__name__)

HISTORY_LIMIT: int = 1000
"""Most recent moves kept in ConsolidationEngine.history. Older ones are dropped."""


@dataclass
class PendingMigration:
    """A whole-VM migration the harness has not confirmed yet."""
    vm_id: int
    task_id: int
    source: int
    target: int
    requested_at: float


@dataclass
class MigrationRecord:
    """One completed move decision."""
    task_id: int
    source: int
    target: int
    vm_id: int
    whole_vm: bool
    time: float


class ConsolidationEngine:
    """
    Attributes:
        pending:    vm_id → PendingMigration, cleared by on_migration_complete().
        history:    The last HISTORY_LIMIT moves issued, oldest first.
        migrations: Every move issued, for the report.
    """

    def __init__(
        self,
        harness: ClusterHarness,
        catalog: ResourceCatalog,
        ledger: PlacementLedger,
        power: PowerManager,
        placement: PlacementEngine,
        config: SchedulerConfig,
    ) -> None:
        self._harness = harness
        self._catalog = catalog
        self._ledger = ledger
        self._power = power
        self._placement = placement
        self._config = config

        self.pending: Dict[int, PendingMigration] = {}
        self.history: Deque[MigrationRecord] = deque(maxlen=HISTORY_LIMIT)
        self.migrations = 0

    # ── Cycle ─────────────────────────────────────────────────────────────────

    def consolidate(self, now: float, floor: Optional[int] = None) -> Optional[MigrationRecord]:
        """Run one cycle. Returns the move made, if any."""
        record = self._migrate_one(now)
        self._power.idle_sweep(now, floor)
        return record

    def _migrate_one(self, now: float) -> Optional[MigrationRecord]:
        ranked = sorted(
            self._power.active_machines(),
            key=lambda m: (self._ledger.utilization(m), m),
        )
        if len(ranked) < 2:
            return None
        high = ranked[len(ranked) // 2:]

        source = next((m for m in ranked if self._ledger.task_count(m) > 0), None)
        if source is None:
            return None
        task_id = self.smallest_task(source)
        if task_id is None:
            return None

        req = self._harness.task_requirements(task_id)
        destination = self._pick_destination(req, source, high)
        if destination is None:
            logger.debug(
                "consolidate: no destination for task %d (%dMB) from machine %d",
                task_id, req.memory, source,
            )
            return None
        return self.move(task_id, destination, now)

    def smallest_task(self, machine_id: int) -> Optional[int]:
        """Smallest-memory task on the machine whose VM is not migrating."""
        movable = []
        for task_id in self._ledger.tasks_on(machine_id):
            vm = self._ledger.vm(self._ledger.vm_of(task_id))
            if vm is not None and not vm.migrating:
                movable.append(task_id)
        if not movable:
            return None
        return min(movable, key=lambda t: (self._ledger.memory_of(t), t))

    def _pick_destination(self, req: TaskRequirements, source: int,
                          high: List[int]) -> Optional[int]:
        source_util = self._ledger.utilization(source)
        scan = sorted(high, key=lambda m: (-self._ledger.utilization(m), m))
        for machine_id in scan:
            if machine_id == source or self._ledger.migration_pending_on(machine_id):
                continue
            if self._ledger.utilization(machine_id) < source_util:
                continue
            if self._placement.fits(machine_id, req):
                return machine_id
        return None

    # ── Moves ─────────────────────────────────────────────────────────────────

    def move(self, task_id: int, destination: int, now: float) -> Optional[MigrationRecord]:
        """
        Move a tracked task to destination, whole-VM if it is alone on its VM.
        Returns None if the move was rejected (task stays where it was).
        """
        vm_id = self._ledger.vm_of(task_id)
        source = self._ledger.machine_of(task_id)
        if vm_id is None or source is None or source == destination:
            return None
        vm = self._ledger.vm(vm_id)

        if (
            vm.tasks == {task_id}
            and not vm.migrating
            and not self._ledger.migration_pending_on(destination)
        ):
            self._harness.request_migration(vm_id, destination)
            self._ledger.move_vm(vm_id, destination)
            self.pending[vm_id] = PendingMigration(
                vm_id=vm_id, task_id=task_id, source=source,
                target=destination, requested_at=now,
            )
            whole_vm = True
            logger.info("Migrating VM %d (task %d) %d → %d at t=%.2f",
                        vm_id, task_id, source, destination, now)
        else:
            result = self._placement.relocate(task_id, destination, now)
            if not result.accepted:
                return None
            vm_id = self._ledger.vm_of(task_id)
            whole_vm = False

        record = MigrationRecord(
            task_id=task_id, source=source, target=destination,
            vm_id=vm_id, whole_vm=whole_vm, time=now,
        )
        self.history.append(record)
        self.migrations += 1
        return record

    def on_migration_complete(self, vm_id: int, now: float, floor: Optional[int] = None) -> bool:
        """
        Reconcile a finished whole-VM migration. Powers the source down if
        it is now empty and the floor allows. Returns False for a VM this
        engine never migrated.
        """
        pending = self.pending.pop(vm_id, None)
        self._ledger.finish_vm_migration(vm_id)
        if pending is None:
            logger.warning("Migration complete for VM %d with no pending record; ignored.", vm_id)
            return False

        floor = self._config.min_active_machines if floor is None else floor
        logger.debug("Migration of VM %d confirmed after %.2fs",
                     vm_id, now - pending.requested_at)
        if (
            self._ledger.task_count(pending.source) == 0
            and len(self._power.active_machines()) > floor
        ):
            self._power.deactivate(pending.source, now)
        return True

    def __repr__(self) -> str:
        return f"ConsolidationEngine(migrations={self.migrations}, pending={len(self.pending)})"
