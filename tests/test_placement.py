"""
tests/test_placement.py
────────────────────────
Test suite for ecosched/control_plane/placement.py and requirements.py,
driven through a real Scheduler on a SimulatedCluster.

Test groups
────────────
Group 1: Basic placement     — arch match, memory bookkeeping, VM reuse
Group 2: Violations          — structural mismatch, exhausted capacity, SLA3
Group 3: Rejection handling  — a rejected candidate is retried elsewhere
Group 4: Tier fallback       — STANDBY then OFF machines are woken for work
Group 5: Idle power-down     — an emptied machine sleeps and draws less
"""

from __future__ import annotations

from typing import Dict, List, Optional

import pytest

from ecosched.cluster.catalog import ResourceCatalog
from ecosched.cluster.simulated import SLEEP_LATENCY_S, MachineSpec, SimulatedCluster, TaskSpec
from ecosched.cluster.simulation import dispatch_completion
from ecosched.control_plane.requirements import structural_mismatch
from ecosched.control_plane.scheduler import Scheduler
from ecosched.shared.config import SchedulerConfig
from ecosched.shared.models import (
    AssignResult,
    CPUArch,
    PlacementStatus,
    PowerState,
    Priority,
    SLAClass,
    TaskRequirements,
    VMType,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class _RejectingCluster(SimulatedCluster):
    """Answers REJECTED_MIGRATING for every VM on the listed machines."""

    def __init__(self, machines: List[MachineSpec], reject_on: List[int]) -> None:
        super().__init__(machines)
        self.reject_on = set(reject_on)

    def assign_task(self, vm_id: int, task_id: int, priority: Priority) -> AssignResult:
        if self.vm_info(vm_id).machine_id in self.reject_on:
            return AssignResult.REJECTED_MIGRATING
        return super().assign_task(vm_id, task_id, priority)


def _specs(archs: List[CPUArch], memory: int = 256) -> List[MachineSpec]:
    return [MachineSpec(cpu=arch, memory_size=memory) for arch in archs]


def _task(task_id: int, cpu: CPUArch = CPUArch.X86, memory: int = 100,
          sla: SLAClass = SLAClass.SLA2, vm: VMType = VMType.LINUX,
          gpu: bool = False, duration: float = 1000.0) -> TaskSpec:
    return TaskSpec(
        requirements=TaskRequirements(
            task_id=task_id, required_cpu=cpu, required_vm=vm,
            memory=memory, sla=sla, gpu_capable=gpu,
        ),
        arrival=0.0,
        duration=duration,
    )


def _scheduler(cluster: SimulatedCluster, policy: str = "greedy",
               overrides: Optional[Dict] = None) -> Scheduler:
    config = SchedulerConfig.from_mapping({"check_invariants": True, **(overrides or {})})
    scheduler = Scheduler(cluster, policy, config)
    scheduler.init(cluster.now)
    return scheduler


def _arrive(cluster: SimulatedCluster, scheduler: Scheduler, task: TaskSpec):
    cluster.add_task(task)
    return scheduler.on_task_arrival(cluster.now, task.task_id)


def _settle(cluster: SimulatedCluster, scheduler: Scheduler, until: float) -> None:
    """Deliver every harness completion due up to `until`."""
    while True:
        event = cluster.pop_next_completion(until)
        if event is None:
            break
        dispatch_completion(scheduler, event, cluster.now)
    cluster.advance_to(max(until, cluster.now))


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: Basic placement
# ─────────────────────────────────────────────────────────────────────────────

class TestBasicPlacement:

    @pytest.fixture
    def mixed(self) -> SimulatedCluster:
        """Machines 0,1 are X86 and 2,3 are ARM, 256MB each, all ACTIVE."""
        return SimulatedCluster(_specs([CPUArch.X86, CPUArch.X86, CPUArch.ARM, CPUArch.ARM]))

    def test_task_lands_on_matching_arch(self, mixed: SimulatedCluster) -> None:
        """A 100MB X86 task goes to an X86 machine and is counted there."""
        scheduler = _scheduler(mixed)

        outcome = _arrive(mixed, scheduler, _task(1, CPUArch.X86, 100))

        assert outcome.status is PlacementStatus.ASSIGNED
        assert outcome.machine_id in (0, 1)
        assert mixed.machine_info(outcome.machine_id).memory_used == 100
        assert scheduler.ledger.memory_used(outcome.machine_id) == 100
        assert sum(scheduler.placement.violations.values()) == 0

    def test_arm_task_never_on_x86(self, mixed: SimulatedCluster) -> None:
        scheduler = _scheduler(mixed)

        outcomes = [_arrive(mixed, scheduler, _task(i, CPUArch.ARM, 60)) for i in range(4)]

        assert all(o.machine_id in (2, 3) for o in outcomes)

    def test_same_type_reuses_vm(self) -> None:
        cluster = SimulatedCluster(_specs([CPUArch.X86]))
        scheduler = _scheduler(cluster)

        first = _arrive(cluster, scheduler, _task(1, memory=50))
        second = _arrive(cluster, scheduler, _task(2, memory=50))
        other = _arrive(cluster, scheduler, _task(3, memory=50, vm=VMType.WIN))

        assert first.vm_id == second.vm_id
        assert other.vm_id != first.vm_id
        assert cluster.machine_info(0).active_vms == 2

    def test_greedy_spreads_by_utilization(self, mixed: SimulatedCluster) -> None:
        scheduler = _scheduler(mixed)

        a = _arrive(mixed, scheduler, _task(1, memory=100))
        b = _arrive(mixed, scheduler, _task(2, memory=100))

        assert {a.machine_id, b.machine_id} == {0, 1}

    def test_gpu_task_only_on_gpu_machine(self) -> None:
        cluster = SimulatedCluster([
            MachineSpec(cpu=CPUArch.X86, memory_size=256),
            MachineSpec(cpu=CPUArch.X86, memory_size=256, gpu=True),
        ])
        scheduler = _scheduler(cluster)

        outcome = _arrive(cluster, scheduler, _task(1, gpu=True))

        assert outcome.machine_id == 1

    def test_duplicate_arrival_keeps_placement(self, mixed: SimulatedCluster) -> None:
        scheduler = _scheduler(mixed)
        first = _arrive(mixed, scheduler, _task(1))

        again = scheduler.on_task_arrival(mixed.now, 1)

        assert again.machine_id == first.machine_id
        assert scheduler.placement.placements == 1


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Violations
# ─────────────────────────────────────────────────────────────────────────────

class TestViolations:

    def test_missing_arch_is_one_violation(self) -> None:
        """No machine of the task's arch → exactly one violation, nothing woken."""
        cluster = SimulatedCluster(_specs([CPUArch.X86, CPUArch.ARM]))
        scheduler = _scheduler(cluster)

        outcome = _arrive(cluster, scheduler, _task(1, CPUArch.POWER))

        assert outcome.status is PlacementStatus.VIOLATION
        assert outcome.attempts == 0
        assert "no machine with arch power" in outcome.reason
        assert scheduler.placement.violations[SLAClass.SLA2] == 1
        assert scheduler.placement.unplaced == [1]
        assert scheduler.power.activations == 0

    def test_second_large_task_goes_elsewhere(self) -> None:
        cluster = SimulatedCluster(_specs([CPUArch.X86, CPUArch.X86]))
        scheduler = _scheduler(cluster)

        a = _arrive(cluster, scheduler, _task(1, memory=200))
        b = _arrive(cluster, scheduler, _task(2, memory=200))

        assert a.machine_id != b.machine_id
        assert max(cluster.machine_info(m).memory_used for m in (0, 1)) == 200

    def test_second_large_task_on_single_machine_is_violation(self) -> None:
        cluster = SimulatedCluster(_specs([CPUArch.X86]))
        scheduler = _scheduler(cluster)

        _arrive(cluster, scheduler, _task(1, memory=200))
        outcome = _arrive(cluster, scheduler, _task(2, memory=200))

        assert outcome.status is PlacementStatus.VIOLATION
        assert cluster.machine_info(0).memory_used == 200
        assert scheduler.placement.violations[SLAClass.SLA2] == 1

    def test_best_effort_miss_is_not_counted(self) -> None:
        cluster = SimulatedCluster(_specs([CPUArch.X86]))
        scheduler = _scheduler(cluster)

        outcome = _arrive(cluster, scheduler, _task(1, CPUArch.ARM, sla=SLAClass.SLA3))

        assert outcome.status is PlacementStatus.VIOLATION
        assert sum(scheduler.placement.violations.values()) == 0
        assert scheduler.placement.unplaced == [1]

    @pytest.mark.parametrize("req, fragment", [
        (TaskRequirements(task_id=1, required_cpu=CPUArch.RISCV, memory=10), "no machine"),
        (TaskRequirements(task_id=1, required_cpu=CPUArch.X86, memory=10, gpu_capable=True), "no GPU"),
        (TaskRequirements(task_id=1, required_cpu=CPUArch.X86, memory=999), "needs 999MB"),
    ])
    def test_structural_mismatch_reasons(self, req: TaskRequirements, fragment: str) -> None:
        catalog = ResourceCatalog(SimulatedCluster(_specs([CPUArch.X86])))
        assert fragment in structural_mismatch(req, catalog)

    def test_structural_match(self) -> None:
        catalog = ResourceCatalog(SimulatedCluster(_specs([CPUArch.X86])))
        req = TaskRequirements(task_id=1, required_cpu=CPUArch.X86, memory=256)
        assert structural_mismatch(req, catalog) is None


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Rejection handling
# ─────────────────────────────────────────────────────────────────────────────

class TestRejectionHandling:

    def test_rejected_candidate_retried_elsewhere(self) -> None:
        cluster = _RejectingCluster(_specs([CPUArch.X86, CPUArch.X86]), reject_on=[0])
        scheduler = _scheduler(cluster)

        outcome = _arrive(cluster, scheduler, _task(1))

        assert outcome.machine_id == 1
        assert outcome.attempts == 2
        assert scheduler.ledger.memory_used(0) == 0
        assert scheduler.ledger.memory_used(1) == 100

    def test_all_rejected_is_violation(self) -> None:
        cluster = _RejectingCluster(_specs([CPUArch.X86, CPUArch.X86]), reject_on=[0, 1])
        scheduler = _scheduler(cluster)

        outcome = _arrive(cluster, scheduler, _task(1))

        assert outcome.status is PlacementStatus.VIOLATION
        assert outcome.attempts == 2
        assert not scheduler.ledger.is_tracked(1)


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: Tier fallback
# ─────────────────────────────────────────────────────────────────────────────

class TestTierFallback:

    def _cluster_with_sleeper(self, idle_state: PowerState) -> tuple:
        cluster = SimulatedCluster(_specs([CPUArch.X86, CPUArch.X86]))
        scheduler = _scheduler(cluster, overrides={"idle_power_state": idle_state.value})
        scheduler.power.deactivate(1, cluster.now)
        _settle(cluster, scheduler, 1.0)
        return cluster, scheduler

    def test_standby_machine_woken_for_work(self) -> None:
        cluster, scheduler = self._cluster_with_sleeper(PowerState.STANDBY)
        _arrive(cluster, scheduler, _task(1, memory=200))

        outcome = _arrive(cluster, scheduler, _task(2, memory=200))

        assert outcome.machine_id == 1
        assert scheduler.power.tier(1) is PowerState.ACTIVE
        assert scheduler.power.is_pending(1)
        assert cluster.machine_info(1).transitioning

        _settle(cluster, scheduler, cluster.now + 10.0)
        assert cluster.machine_info(1).power_state is PowerState.ACTIVE
        assert scheduler.power.pending == {}

    def test_off_machine_woken_for_work(self) -> None:
        cluster, scheduler = self._cluster_with_sleeper(PowerState.OFF)
        assert cluster.machine_info(1).power_state is PowerState.OFF
        _arrive(cluster, scheduler, _task(1, memory=200))

        outcome = _arrive(cluster, scheduler, _task(2, memory=200))

        assert outcome.machine_id == 1
        assert scheduler.power.activations == 1

    def test_idle_active_machine_preferred_over_sleeping(self) -> None:
        cluster, scheduler = self._cluster_with_sleeper(PowerState.STANDBY)

        outcome = _arrive(cluster, scheduler, _task(1, memory=50))

        assert outcome.machine_id == 0
        assert scheduler.power.activations == 0


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: Idle power-down
# ─────────────────────────────────────────────────────────────────────────────

class TestIdlePowerDown:

    def test_emptied_machine_sleeps_after_tick(self) -> None:
        """Last task on machine 1 finishes, the next tick sends it to STANDBY."""
        cluster = SimulatedCluster(_specs([CPUArch.X86, CPUArch.X86]))
        scheduler = _scheduler(cluster)
        _arrive(cluster, scheduler, _task(1))
        second = _arrive(cluster, scheduler, _task(2))
        assert second.machine_id == 1

        cluster.advance_to(5.0)
        cluster.finish_task(2)
        scheduler.on_task_completion(cluster.now, 2)
        scheduler.on_periodic_tick(cluster.now)
        draw_awake = cluster.power_draw(1)

        assert scheduler.power.tier(1) is PowerState.STANDBY
        assert cluster.machine_info(1).power_state is PowerState.ACTIVE

        _settle(cluster, scheduler, cluster.now + SLEEP_LATENCY_S)

        assert cluster.machine_info(1).power_state is PowerState.STANDBY
        assert cluster.power_draw(1) < draw_awake
        assert scheduler.power.pending == {}
        assert cluster.machine_info(1).active_vms == 0

    def test_floor_keeps_last_machine_awake(self) -> None:
        cluster = SimulatedCluster(_specs([CPUArch.X86]))
        scheduler = _scheduler(cluster)
        _arrive(cluster, scheduler, _task(1))
        cluster.finish_task(1)
        scheduler.on_task_completion(cluster.now, 1)

        scheduler.on_periodic_tick(cluster.now)

        assert scheduler.power.active_machines() == [0]
        assert scheduler.power.deactivations == 0
