"""
tests/test_consolidation.py
────────────────────────────
Test suite for ecosched/control_plane/consolidation.py

Each test builds its starting layout through ordinary arrivals on a
greedy Scheduler (least-utilised first), then drives consolidation
through the scheduler's tick and completion handlers.

Test groups
────────────
Group 1: Whole-VM migration   — single-task VM moves, source sleeps after
Group 2: Task-level move      — shared VM, unassign + assign, bounded history
Group 3: Rollback             — destination rejects, task stays put
Group 4: No destination       — arch mismatch, nothing fuller
"""

from __future__ import annotations

from typing import List

import pytest

from ecosched.cluster.simulated import (
    MIGRATION_LATENCY_S,
    SLEEP_LATENCY_S,
    MachineSpec,
    SimulatedCluster,
    TaskSpec,
)
from ecosched.cluster.simulation import dispatch_completion
from ecosched.control_plane import consolidation as consolidation_module
from ecosched.control_plane.scheduler import Scheduler
from ecosched.shared.config import SchedulerConfig
from ecosched.shared.models import AssignResult, CPUArch, PowerState, Priority, TaskRequirements


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class _RejectingCluster(SimulatedCluster):
    """Accepts normally until `closed` lists a machine, then rejects work there."""

    def __init__(self, machines: List[MachineSpec]) -> None:
        super().__init__(machines)
        self.closed: set = set()

    def assign_task(self, vm_id: int, task_id: int, priority: Priority) -> AssignResult:
        if self.vm_info(vm_id).machine_id in self.closed:
            return AssignResult.REJECTED_CAPACITY
        return super().assign_task(vm_id, task_id, priority)


def _x86(n: int, cluster_cls=SimulatedCluster) -> SimulatedCluster:
    return cluster_cls([MachineSpec(cpu=CPUArch.X86, memory_size=256) for _ in range(n)])


def _scheduler(cluster: SimulatedCluster) -> Scheduler:
    scheduler = Scheduler(cluster, "greedy", SchedulerConfig(check_invariants=True))
    scheduler.init(cluster.now)
    return scheduler


def _arrive(cluster: SimulatedCluster, scheduler: Scheduler, task_id: int, memory: int,
            cpu: CPUArch = CPUArch.X86) -> int:
    cluster.add_task(TaskSpec(
        requirements=TaskRequirements(task_id=task_id, required_cpu=cpu, memory=memory),
        arrival=cluster.now,
        duration=1000.0,
    ))
    return scheduler.on_task_arrival(cluster.now, task_id).machine_id


def _settle(cluster: SimulatedCluster, scheduler: Scheduler, until: float) -> None:
    while True:
        event = cluster.pop_next_completion(until)
        if event is None:
            break
        dispatch_completion(scheduler, event, cluster.now)


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: Whole-VM migration
# ─────────────────────────────────────────────────────────────────────────────

class TestWholeVMMigration:

    def test_lonely_task_migrates_to_fuller_machine(self) -> None:
        """
        Machine 0 holds 100MB, machine 1 holds one 50MB task alone on its VM.
        The tick migrates that VM to machine 0; machine 1 stays ACTIVE until
        the harness confirms the migration, then goes to sleep.
        """
        cluster = _x86(2)
        scheduler = _scheduler(cluster)
        assert _arrive(cluster, scheduler, 1, 100) == 0
        assert _arrive(cluster, scheduler, 2, 50) == 1
        vm_id = scheduler.ledger.vm_of(2)

        scheduler.on_periodic_tick(cluster.now)

        assert scheduler.ledger.machine_of(2) == 0
        assert vm_id in scheduler.consolidation.pending
        assert cluster.vm_info(vm_id).migrating
        assert scheduler.power.tier(1) is PowerState.ACTIVE
        assert scheduler.consolidation.history[0].whole_vm

        _settle(cluster, scheduler, cluster.now + MIGRATION_LATENCY_S)

        assert scheduler.consolidation.pending == {}
        assert cluster.vm_info(vm_id).machine_id == 0
        assert scheduler.power.tier(1) is PowerState.STANDBY

        _settle(cluster, scheduler, cluster.now + SLEEP_LATENCY_S)

        assert cluster.machine_info(1).power_state is PowerState.STANDBY
        assert cluster.machine_info(0).memory_used == 150
        assert scheduler.power.pending == {}

    def test_migration_counted_once(self) -> None:
        cluster = _x86(2)
        scheduler = _scheduler(cluster)
        _arrive(cluster, scheduler, 1, 100)
        _arrive(cluster, scheduler, 2, 50)

        scheduler.on_periodic_tick(cluster.now)
        scheduler.on_periodic_tick(cluster.now)

        assert scheduler.consolidation.migrations == 1

    def test_unknown_migration_completion_is_counted(self) -> None:
        cluster = _x86(2)
        scheduler = _scheduler(cluster)

        scheduler.on_migration_complete(cluster.now, 77)

        assert scheduler.unknown_lookups == 1


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Task-level move
# ─────────────────────────────────────────────────────────────────────────────

class TestTaskLevelMove:

    def test_shared_vm_moves_single_task(self) -> None:
        """Machine 1's VM holds tasks 2 and 3; only the smaller one moves."""
        cluster = _x86(2)
        scheduler = _scheduler(cluster)
        assert _arrive(cluster, scheduler, 1, 200) == 0
        assert _arrive(cluster, scheduler, 2, 20) == 1
        assert _arrive(cluster, scheduler, 3, 30) == 1

        scheduler.on_periodic_tick(cluster.now)

        record = scheduler.consolidation.history[0]
        assert record.task_id == 2
        assert not record.whole_vm
        assert scheduler.ledger.machine_of(2) == 0
        assert scheduler.ledger.machine_of(3) == 1
        assert cluster.task_location(2) == scheduler.ledger.vm_of(1)
        assert cluster.machine_info(0).memory_used == 220
        assert scheduler.consolidation.pending == {}
        assert scheduler.power.tier(1) is PowerState.ACTIVE

    def test_history_keeps_only_recent_moves(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Task 2 bounces between the two shared VMs three times."""
        monkeypatch.setattr(consolidation_module, "HISTORY_LIMIT", 2)
        cluster = _x86(2)
        scheduler = _scheduler(cluster)
        _arrive(cluster, scheduler, 1, 200)
        _arrive(cluster, scheduler, 2, 20)
        _arrive(cluster, scheduler, 3, 30)

        for destination in (0, 1, 0):
            assert scheduler.consolidation.move(2, destination, cluster.now) is not None

        history = scheduler.consolidation.history
        assert scheduler.consolidation.migrations == 3
        assert [r.target for r in history] == [1, 0]
        assert not any(r.whole_vm for r in history)
        assert scheduler.ledger.machine_of(2) == 0


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Rollback
# ─────────────────────────────────────────────────────────────────────────────

class TestRollback:

    def test_rejected_move_rolls_back(self) -> None:
        cluster = _x86(2, _RejectingCluster)
        scheduler = _scheduler(cluster)
        _arrive(cluster, scheduler, 1, 200)
        _arrive(cluster, scheduler, 2, 20)
        _arrive(cluster, scheduler, 3, 30)
        source_vm = scheduler.ledger.vm_of(2)
        cluster.closed = {0}

        scheduler.on_periodic_tick(cluster.now)

        assert scheduler.consolidation.migrations == 0
        assert scheduler.ledger.vm_of(2) == source_vm
        assert cluster.task_location(2) == source_vm
        assert cluster.machine_info(1).memory_used == 50
        assert sum(scheduler.placement.violations.values()) == 0


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: No destination
# ─────────────────────────────────────────────────────────────────────────────

class TestNoDestination:

    def test_arch_mismatch_means_no_move(self) -> None:
        cluster = SimulatedCluster([
            MachineSpec(cpu=CPUArch.X86, memory_size=256),
            MachineSpec(cpu=CPUArch.ARM, memory_size=256),
        ])
        scheduler = _scheduler(cluster)
        _arrive(cluster, scheduler, 1, 50, CPUArch.X86)
        _arrive(cluster, scheduler, 2, 150, CPUArch.ARM)

        record = scheduler.consolidation.consolidate(cluster.now)

        assert record is None
        assert scheduler.ledger.machine_of(1) == 0
        assert scheduler.ledger.machine_of(2) == 1
        assert scheduler.power.active_machines() == [0, 1]

    def test_too_full_destination_skipped(self) -> None:
        cluster = _x86(2)
        scheduler = _scheduler(cluster)
        _arrive(cluster, scheduler, 1, 200)
        _arrive(cluster, scheduler, 2, 100)

        assert scheduler.consolidation.consolidate(cluster.now) is None
        assert scheduler.consolidation.migrations == 0
