"""
ecosched/cluster/simulated.py
─────────────────────────────
SimulatedCluster: an in-memory ClusterHarness for tests and offline runs.

What this simulates
────────────────────
  • Machines with fixed arch / memory / GPU and a three-level power model:
      ACTIVE  → active_watts + per_task_watts × tasks
      STANDBY → standby_watts
      OFF     → 0 W
    Energy is integrated piecewise over simulated time.
  • VMs bound to one machine, holding a set of tasks.
  • Capacity-checked assignment that answers with an AssignResult.
  • Asynchronous power changes, VM migrations and task executions. Each is
    pushed on an internal heap and surfaces later through
    pop_next_completion(), which the Simulation driver interleaves with
    arrivals and ticks.
  • SLA bookkeeping: a task meets its SLA when it finishes before
    arrival + duration × SLA_SLACK[class].

What it does NOT simulate
──────────────────────────
CPU cycles, memory bandwidth, network transfer of migrating pages. Task
runtime is fixed when the task first starts: duration × (1 + slowdown per
co-located task).

Design
───────
Synchronous. advance_to(t) moves the clock and integrates energy; the
driver calls it before delivering each event. Commands that violate the
harness contract (double placement, powering down a machine that still
hosts tasks, migrating to an incompatible machine) raise ValueError — they
are scheduler bugs and tests should see them.
"""

from __future__ import annotations

import heapq
import itertools
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

from ecosched.cluster.harness import ClusterHarness, UnknownEntityError
from ecosched.shared.models import (
    AssignResult,
    CPUArch,
    MachineInfo,
    PowerState,
    Priority,
    SLAClass,
    TaskRequirements,
    VMInfo,
    VMType,
)

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

WAKE_LATENCY_S: float = 1.0
"""STANDBY → ACTIVE transition time."""

BOOT_LATENCY_S: float = 5.0
"""OFF → ACTIVE transition time."""

SLEEP_LATENCY_S: float = 0.5
"""ACTIVE → STANDBY / OFF transition time."""

MIGRATION_LATENCY_S: float = 2.0
"""Time for a live VM migration to complete."""

SLOWDOWN_PER_TASK: float = 0.10
"""Runtime stretch per task already running on the machine at start."""

SLA_SLACK: Dict[SLAClass, Optional[float]] = {
    SLAClass.SLA0: 1.2,
    SLAClass.SLA1: 1.5,
    SLAClass.SLA2: 2.0,
    SLAClass.SLA3: None,
}
"""Deadline = arrival + duration × slack. None → no deadline."""


class MachineSpec(BaseModel):
    """Hardware description of one simulated machine."""
    cpu: CPUArch
    memory_size: int = Field(..., gt=0, description="MB")
    gpu: bool = False
    active_watts: float = Field(200.0, ge=0)
    per_task_watts: float = Field(10.0, ge=0)
    standby_watts: float = Field(30.0, ge=0)


class TaskSpec(BaseModel):
    """A task the simulated harness knows about: requirements plus timing."""
    requirements: TaskRequirements
    arrival: float = Field(..., ge=0)
    duration: float = Field(..., gt=0)

    @property
    def task_id(self) -> int:
        return self.requirements.task_id

    @property
    def deadline(self) -> Optional[float]:
        slack = SLA_SLACK[self.requirements.sla]
        return None if slack is None else self.arrival + self.duration * slack


@dataclass
class _Machine:
    spec: MachineSpec
    power_state: PowerState = PowerState.ACTIVE
    target: Optional[PowerState] = None
    token: int = 0
    vms: Set[int] = field(default_factory=set)
    incoming_memory: int = 0
    energy: float = 0.0


@dataclass
class _VM:
    vm_type: VMType
    cpu: CPUArch
    machine_id: Optional[int] = None
    tasks: Set[int] = field(default_factory=set)
    migrating_to: Optional[int] = None
    reserved: int = 0


@dataclass(order=True)
class Completion:
    """One asynchronous completion surfaced to the driver."""
    time: float
    seq: int
    kind: str = field(compare=False)    # "power" | "migration" | "task" | "sla-risk"
    entity_id: int = field(compare=False)
    token: int = field(default=0, compare=False)


class SimulatedCluster(ClusterHarness):
    """
    In-memory harness.

    Usage:
        cluster = SimulatedCluster([MachineSpec(cpu=CPUArch.X86, memory_size=256)] * 4)
        cluster.add_task(TaskSpec(requirements=req, arrival=0.0, duration=5.0))
        cluster.advance_to(0.0)
        ... scheduler issues commands ...
        event = cluster.pop_next_completion(until=10.0)
    """

    def __init__(
        self,
        machines: List[MachineSpec],
        initial_state: PowerState = PowerState.ACTIVE,
        wake_latency_s: float = WAKE_LATENCY_S,
        boot_latency_s: float = BOOT_LATENCY_S,
        sleep_latency_s: float = SLEEP_LATENCY_S,
        migration_latency_s: float = MIGRATION_LATENCY_S,
    ) -> None:
        if not machines:
            raise ValueError("SimulatedCluster requires at least one machine.")
        self._machines: List[_Machine] = [
            _Machine(spec=spec, power_state=initial_state) for spec in machines
        ]
        self._vms: Dict[int, _VM] = {}
        self._tasks: Dict[int, TaskSpec] = {}
        self._task_vm: Dict[int, int] = {}
        self._started: Dict[int, float] = {}
        self._finished: Dict[int, float] = {}

        self._wake_latency = wake_latency_s
        self._boot_latency = boot_latency_s
        self._sleep_latency = sleep_latency_s
        self._migration_latency = migration_latency_s

        self._heap: List[Completion] = []
        self._seq = itertools.count()
        self._vm_ids = itertools.count()
        self.now: float = 0.0

    # ── Clock ─────────────────────────────────────────────────────────────────

    def advance_to(self, t: float) -> None:
        """Move the clock forward, integrating energy for every machine."""
        if t < self.now:
            raise ValueError(f"time went backwards: {t} < {self.now}")
        dt = t - self.now
        if dt > 0:
            for machine in self._machines:
                machine.energy += self._draw(machine) * dt
        self.now = t

    def _draw(self, machine: _Machine) -> float:
        if machine.power_state is PowerState.OFF:
            return 0.0
        if machine.power_state is PowerState.STANDBY:
            return machine.spec.standby_watts
        n_tasks = sum(len(self._vms[v].tasks) for v in machine.vms)
        return machine.spec.active_watts + machine.spec.per_task_watts * n_tasks

    def power_draw(self, machine_id: int) -> float:
        """Instantaneous draw in watts. Test helper."""
        return self._draw(self._machine(machine_id))

    # ── Workload registry ─────────────────────────────────────────────────────

    def add_task(self, task: TaskSpec) -> None:
        if task.task_id in self._tasks:
            raise ValueError(f"task {task.task_id} registered twice")
        self._tasks[task.task_id] = task

    def task_spec(self, task_id: int) -> TaskSpec:
        task = self._tasks.get(task_id)
        if task is None:
            raise UnknownEntityError("task", task_id)
        return task

    def task_location(self, task_id: int) -> Optional[int]:
        """VM currently holding the task, or None. Test helper."""
        return self._task_vm.get(task_id)

    def is_finished(self, task_id: int) -> bool:
        return task_id in self._finished

    def finish_task(self, task_id: int) -> None:
        """Complete a task now, ahead of its scheduled finish. Test helper."""
        vm_id = self._task_vm.pop(task_id, None)
        if vm_id is None:
            raise ValueError(f"task {task_id} is not running")
        self._vms[vm_id].tasks.discard(task_id)
        self._finished[task_id] = self.now

    def vm_ids(self) -> List[int]:
        return sorted(self._vms)

    # ── Lookups ───────────────────────────────────────────────────────────────

    def _machine(self, machine_id: int) -> _Machine:
        if not 0 <= machine_id < len(self._machines):
            raise UnknownEntityError("machine", machine_id)
        return self._machines[machine_id]

    def _vm(self, vm_id: int) -> _VM:
        vm = self._vms.get(vm_id)
        if vm is None:
            raise UnknownEntityError("vm", vm_id)
        return vm

    def _memory_used(self, machine_id: int) -> int:
        machine = self._machines[machine_id]
        # A migrating VM is counted on both ends until the move completes.
        used = machine.incoming_memory
        for vm_id in machine.vms:
            used += self._vm_memory(self._vms[vm_id])
        return used

    def _vm_memory(self, vm: _VM) -> int:
        return sum(self._tasks[t].requirements.memory for t in vm.tasks)

    def _push(self, time: float, kind: str, entity_id: int, token: int = 0) -> None:
        heapq.heappush(self._heap, Completion(time, next(self._seq), kind, entity_id, token))

    # ── Commands ──────────────────────────────────────────────────────────────

    def create_vm(self, vm_type: VMType, cpu: CPUArch) -> int:
        vm_id = next(self._vm_ids)
        self._vms[vm_id] = _VM(vm_type=vm_type, cpu=cpu)
        return vm_id

    def attach_vm(self, vm_id: int, machine_id: int) -> None:
        vm = self._vm(vm_id)
        machine = self._machine(machine_id)
        if vm.cpu is not machine.spec.cpu:
            raise ValueError(
                f"VM {vm_id} ({vm.cpu.value}) cannot attach to machine "
                f"{machine_id} ({machine.spec.cpu.value})"
            )
        if vm.machine_id is not None:
            raise ValueError(f"VM {vm_id} is already attached to {vm.machine_id}")
        vm.machine_id = machine_id
        machine.vms.add(vm_id)

    def assign_task(self, vm_id: int, task_id: int, priority: Priority) -> AssignResult:
        vm = self._vm(vm_id)
        task = self.task_spec(task_id)
        if task_id in self._task_vm:
            raise ValueError(
                f"task {task_id} is already in VM {self._task_vm[task_id]}; "
                f"refusing to place it in VM {vm_id} as well"
            )
        req = task.requirements
        if vm.machine_id is None:
            return AssignResult.REJECTED_INCOMPATIBLE
        if vm.migrating_to is not None:
            return AssignResult.REJECTED_MIGRATING
        machine = self._machines[vm.machine_id]
        if req.required_cpu is not vm.cpu or req.required_vm is not vm.vm_type:
            return AssignResult.REJECTED_INCOMPATIBLE
        if req.gpu_capable and not machine.spec.gpu:
            return AssignResult.REJECTED_INCOMPATIBLE
        heading = machine.target if machine.target is not None else machine.power_state
        if heading is not PowerState.ACTIVE:
            return AssignResult.REJECTED_POWERED_DOWN
        if self._memory_used(vm.machine_id) + req.memory > machine.spec.memory_size:
            return AssignResult.REJECTED_CAPACITY

        co_located = sum(len(self._vms[v].tasks) for v in machine.vms)
        vm.tasks.add(task_id)
        self._task_vm[task_id] = vm_id

        if task_id not in self._started:
            start = self.now
            if machine.target is PowerState.ACTIVE and machine.power_state is PowerState.OFF:
                start += self._boot_latency
            elif machine.target is PowerState.ACTIVE and machine.power_state is PowerState.STANDBY:
                start += self._wake_latency
            self._started[task_id] = start
            runtime = task.duration * (1.0 + SLOWDOWN_PER_TASK * co_located)
            self._push(start + runtime, "task", task_id)
            deadline = task.deadline
            if deadline is not None and start + runtime > deadline:
                self._push(self.now, "sla-risk", task_id)
        return AssignResult.ACCEPTED

    def unassign_task(self, vm_id: int, task_id: int) -> None:
        vm = self._vm(vm_id)
        if task_id not in vm.tasks:
            raise ValueError(f"task {task_id} is not in VM {vm_id}")
        vm.tasks.discard(task_id)
        del self._task_vm[task_id]

    def request_power_state(self, machine_id: int, state: PowerState) -> None:
        machine = self._machine(machine_id)
        if state is not PowerState.ACTIVE:
            busy = [v for v in machine.vms if self._vms[v].tasks]
            if busy:
                raise ValueError(
                    f"machine {machine_id} still hosts tasks on VMs {sorted(busy)}"
                )
        machine.token += 1
        machine.target = state
        if state is PowerState.ACTIVE:
            latency = (
                self._boot_latency if machine.power_state is PowerState.OFF
                else self._wake_latency
            )
        else:
            latency = self._sleep_latency
        if machine.power_state is state:
            latency = 0.0
        self._push(self.now + latency, "power", machine_id, machine.token)

    def request_migration(self, vm_id: int, target_machine_id: int) -> None:
        vm = self._vm(vm_id)
        target = self._machine(target_machine_id)
        if vm.machine_id is None or vm.migrating_to is not None:
            raise ValueError(f"VM {vm_id} cannot migrate now")
        if target.spec.cpu is not vm.cpu:
            raise ValueError(f"VM {vm_id} arch does not match machine {target_machine_id}")
        memory = self._vm_memory(vm)
        if self._memory_used(target_machine_id) + memory > target.spec.memory_size:
            raise ValueError(f"machine {target_machine_id} cannot hold VM {vm_id}")
        vm.migrating_to = target_machine_id
        target.incoming_memory += memory
        vm.reserved = memory
        self._push(self.now + self._migration_latency, "migration", vm_id)

    def shutdown_vm(self, vm_id: int) -> None:
        vm = self._vm(vm_id)
        if vm.tasks:
            raise ValueError(f"VM {vm_id} still holds tasks {sorted(vm.tasks)}")
        if vm.migrating_to is not None:
            self._machines[vm.migrating_to].incoming_memory -= vm.reserved
        if vm.machine_id is not None:
            self._machines[vm.machine_id].vms.discard(vm_id)
        del self._vms[vm_id]

    # ── Queries ───────────────────────────────────────────────────────────────

    def machine_count(self) -> int:
        return len(self._machines)

    def machine_info(self, machine_id: int) -> MachineInfo:
        machine = self._machine(machine_id)
        return MachineInfo(
            machine_id=machine_id,
            cpu=machine.spec.cpu,
            memory_size=machine.spec.memory_size,
            memory_used=self._memory_used(machine_id),
            gpu=machine.spec.gpu,
            power_state=machine.power_state,
            transitioning=machine.target is not None,
            active_tasks=sum(len(self._vms[v].tasks) for v in machine.vms),
            active_vms=len(machine.vms),
            energy_consumed=machine.energy,
        )

    def vm_info(self, vm_id: int) -> VMInfo:
        vm = self._vm(vm_id)
        return VMInfo(
            vm_id=vm_id,
            vm_type=vm.vm_type,
            cpu=vm.cpu,
            machine_id=vm.machine_id,
            active_tasks=sorted(vm.tasks),
            migrating=vm.migrating_to is not None,
        )

    def task_memory(self, task_id: int) -> int:
        return self.task_spec(task_id).requirements.memory

    def task_requirements(self, task_id: int) -> TaskRequirements:
        return self.task_spec(task_id).requirements

    def machine_energy(self, machine_id: int) -> float:
        return self._machine(machine_id).energy

    def cluster_energy(self) -> float:
        return sum(m.energy for m in self._machines)

    def sla_compliance(self, sla: SLAClass) -> float:
        arrived = [
            t for t in self._tasks.values()
            if t.requirements.sla is sla and t.arrival <= self.now
        ]
        if not arrived:
            return 100.0
        met = 0
        for task in arrived:
            finished = self._finished.get(task.task_id)
            deadline = task.deadline
            if finished is not None and (deadline is None or finished <= deadline):
                met += 1
        return 100.0 * met / len(arrived)

    # ── Completions ───────────────────────────────────────────────────────────

    def next_completion_time(self) -> Optional[float]:
        return self._heap[0].time if self._heap else None

    def pop_next_completion(self, until: float) -> Optional[Completion]:
        """
        Apply and return the earliest completion due at or before `until`.

        Stale entries (a power change superseded by a newer request, a task
        that is no longer placed) are applied silently and skipped.
        """
        while self._heap and self._heap[0].time <= until:
            event = heapq.heappop(self._heap)
            self.advance_to(max(event.time, self.now))
            if self._apply(event):
                return event
        return None

    def _apply(self, event: Completion) -> bool:
        if event.kind == "power":
            machine = self._machines[event.entity_id]
            if event.token != machine.token or machine.target is None:
                return False
            machine.power_state = machine.target
            machine.target = None
            return True

        if event.kind == "migration":
            vm = self._vms.get(event.entity_id)
            if vm is None or vm.migrating_to is None:
                return False
            target_id = vm.migrating_to
            target = self._machines[target_id]
            target.incoming_memory -= vm.reserved
            vm.reserved = 0
            if vm.machine_id is not None:
                self._machines[vm.machine_id].vms.discard(event.entity_id)
            vm.machine_id = target_id
            vm.migrating_to = None
            target.vms.add(event.entity_id)
            return True

        if event.kind == "task":
            if event.entity_id in self._finished:
                return False
            vm_id = self._task_vm.pop(event.entity_id, None)
            if vm_id is None:
                logger.warning("task %d finished while unplaced", event.entity_id)
                return False
            self._vms[vm_id].tasks.discard(event.entity_id)
            self._finished[event.entity_id] = event.time
            return True

        if event.kind == "sla-risk":
            return event.entity_id in self._task_vm

        raise ValueError(f"unknown completion kind {event.kind!r}")

    def __repr__(self) -> str:
        return (
            f"SimulatedCluster(machines={len(self._machines)}, "
            f"vms={len(self._vms)}, tasks={len(self._tasks)}, now={self.now:.2f})"
        )
