"""
tests/test_scheduler.py
────────────────────────
Test suite for ecosched/control_plane/scheduler.py

Test groups
────────────
Group 1: Lifecycle       — init / shutdown ordering, SchedulerStateError
Group 2: Unknown ids     — dropped, logged and counted, never raised
Group 3: Advisories      — capacity overflow
Group 4: Shutdown        — drain, power-off and the final report
Group 5: Isolation       — independent instances side by side
"""

from __future__ import annotations

import logging

import pytest

from ecosched.cluster.simulated import MachineSpec, SimulatedCluster, TaskSpec
from ecosched.control_plane.scheduler import Scheduler, SchedulerStateError
from ecosched.shared.config import SchedulerConfig
from ecosched.shared.models import CPUArch, PowerState, SLAClass, TaskRequirements


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _cluster(n: int = 2) -> SimulatedCluster:
    return SimulatedCluster([MachineSpec(cpu=CPUArch.X86, memory_size=256) for _ in range(n)])


def _add(cluster: SimulatedCluster, task_id: int, cpu: CPUArch = CPUArch.X86,
         memory: int = 100, sla: SLAClass = SLAClass.SLA2) -> None:
    cluster.add_task(TaskSpec(
        requirements=TaskRequirements(task_id=task_id, required_cpu=cpu, memory=memory, sla=sla),
        arrival=cluster.now,
        duration=1000.0,
    ))


@pytest.fixture
def cluster() -> SimulatedCluster:
    return _cluster()


@pytest.fixture
def scheduler(cluster: SimulatedCluster) -> Scheduler:
    scheduler = Scheduler(cluster, "greedy", SchedulerConfig(check_invariants=True))
    scheduler.init(0.0)
    return scheduler


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: Lifecycle
# ─────────────────────────────────────────────────────────────────────────────

class TestLifecycle:

    def test_event_before_init_raises(self, cluster: SimulatedCluster) -> None:
        scheduler = Scheduler(cluster)
        with pytest.raises(SchedulerStateError) as exc_info:
            scheduler.on_periodic_tick(0.0)
        assert exc_info.value.event == "on_periodic_tick"
        assert exc_info.value.state == "new"

    def test_init_twice_raises(self, scheduler: Scheduler) -> None:
        with pytest.raises(SchedulerStateError):
            scheduler.init(1.0)

    def test_event_after_shutdown_raises(self, scheduler: Scheduler) -> None:
        scheduler.shutdown(0.0)
        assert scheduler.state == "shut-down"
        with pytest.raises(SchedulerStateError):
            scheduler.on_task_arrival(1.0, 1)

    def test_shutdown_twice_raises(self, scheduler: Scheduler) -> None:
        scheduler.shutdown(0.0)
        with pytest.raises(SchedulerStateError):
            scheduler.shutdown(0.0)

    def test_default_policy_is_greedy(self, cluster: SimulatedCluster) -> None:
        assert Scheduler(cluster).policy.name == "greedy"


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Unknown ids
# ─────────────────────────────────────────────────────────────────────────────

class TestUnknownIds:

    def test_unknown_arrival_dropped(self, scheduler: Scheduler,
                                     caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING):
            outcome = scheduler.on_task_arrival(0.0, 404)

        assert outcome is None
        assert scheduler.unknown_lookups == 1
        assert "404" in caplog.text

    def test_unknown_completion_counted(self, scheduler: Scheduler) -> None:
        scheduler.on_task_completion(0.0, 404)
        assert scheduler.unknown_lookups == 1
        assert scheduler.completions == 0

    def test_unknown_machine_power_event_counted(self, scheduler: Scheduler) -> None:
        scheduler.on_power_state_change_complete(0.0, 99)
        assert scheduler.unknown_lookups == 1

    def test_violation_is_not_an_unknown(self, cluster: SimulatedCluster,
                                         scheduler: Scheduler) -> None:
        _add(cluster, 1, cpu=CPUArch.ARM)
        scheduler.on_task_arrival(0.0, 1)
        assert scheduler.unknown_lookups == 0

    def test_arrival_times_kept_only_for_placed_tasks(self, cluster: SimulatedCluster,
                                                      scheduler: Scheduler) -> None:
        """Unplaced and unknown tasks never complete, so nothing is kept for them."""
        for task_id in range(50):
            _add(cluster, task_id, cpu=CPUArch.ARM)
            scheduler.on_task_arrival(0.0, task_id)
        scheduler.on_task_arrival(0.0, 404)
        _add(cluster, 100)
        scheduler.on_task_arrival(2.0, 100)

        assert scheduler.arrivals == {100: 2.0}

        cluster.finish_task(100)
        scheduler.on_task_completion(5.0, 100)

        assert scheduler.arrivals == {}


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Advisories
# ─────────────────────────────────────────────────────────────────────────────

class TestAdvisories:

    def test_capacity_overflow_logged_and_counted(self, scheduler: Scheduler,
                                                  caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING):
            scheduler.on_capacity_overflow(0.0, 1)

        assert scheduler.memory_warnings == 1
        assert "Capacity overflow on machine 1" in caplog.text

    def test_capacity_overflow_changes_nothing(self, cluster: SimulatedCluster,
                                               scheduler: Scheduler) -> None:
        _add(cluster, 1)
        scheduler.on_task_arrival(0.0, 1)

        scheduler.on_capacity_overflow(0.0, 0)

        assert scheduler.ledger.machine_of(1) == 0
        assert scheduler.power.pending == {}


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: Shutdown
# ─────────────────────────────────────────────────────────────────────────────

class TestShutdown:

    def test_report_contents(self, cluster: SimulatedCluster, scheduler: Scheduler) -> None:
        _add(cluster, 1)
        _add(cluster, 2, cpu=CPUArch.POWER, sla=SLAClass.SLA0)
        scheduler.on_task_arrival(0.0, 1)
        scheduler.on_task_arrival(0.0, 2)
        cluster.advance_to(10.0)

        report = scheduler.shutdown(10.0)

        assert report.policy == "greedy"
        assert report.finished_at == pytest.approx(10.0)
        assert report.placements == 1
        assert report.violations == {"SLA0": 1, "SLA1": 0, "SLA2": 0, "SLA3": 0}
        assert report.total_violations == 1
        assert report.total_energy == pytest.approx(cluster.cluster_energy())
        assert set(report.sla_compliance) == {"SLA0", "SLA1", "SLA2", "SLA3"}

    def test_shutdown_drains_and_powers_off(self, cluster: SimulatedCluster,
                                            scheduler: Scheduler) -> None:
        _add(cluster, 1)
        _add(cluster, 2)
        scheduler.on_task_arrival(0.0, 1)
        scheduler.on_task_arrival(0.0, 2)

        scheduler.shutdown(0.0)
        while cluster.pop_next_completion(100.0) is not None:
            pass

        assert cluster.task_location(1) is None
        assert cluster.task_location(2) is None
        assert cluster.vm_ids() == []
        assert all(cluster.machine_info(m).power_state is PowerState.OFF for m in range(2))
        assert scheduler.ledger.tracked_tasks() == []

    def test_shutdown_with_migration_in_flight(self, cluster: SimulatedCluster,
                                               scheduler: Scheduler) -> None:
        _add(cluster, 1, memory=100)
        _add(cluster, 2, memory=50)
        scheduler.on_task_arrival(0.0, 1)
        scheduler.on_task_arrival(0.0, 2)
        scheduler.on_periodic_tick(0.0)
        assert scheduler.consolidation.pending

        scheduler.shutdown(0.0)
        while cluster.pop_next_completion(100.0) is not None:
            pass

        assert all(cluster.machine_info(m).power_state is PowerState.OFF for m in range(2))
        assert all(cluster.machine_info(m).memory_used == 0 for m in range(2))

    def test_report_before_shutdown(self, cluster: SimulatedCluster, scheduler: Scheduler) -> None:
        _add(cluster, 1)
        scheduler.on_task_arrival(0.0, 1)

        assert scheduler.report(0.0).placements == 1
        assert scheduler.state == "running"


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: Isolation
# ─────────────────────────────────────────────────────────────────────────────

class TestIsolation:

    def test_two_instances_do_not_share_state(self) -> None:
        first_cluster, second_cluster = _cluster(), _cluster()
        first = Scheduler(first_cluster, "greedy")
        second = Scheduler(second_cluster, "pmapper")
        first.init(0.0)
        second.init(0.0)

        _add(first_cluster, 1)
        first.on_task_arrival(0.0, 1)

        assert first.ledger.tracked_tasks() == [1]
        assert second.ledger.tracked_tasks() == []
        assert second.placement.placements == 0
