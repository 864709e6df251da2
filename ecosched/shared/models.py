"""
ecosched/shared/models.py
─────────────────────────
The single source of truth for every data structure the scheduler reads or
produces.

Design philosophy
-----------------
Every model answers one question: "What does the scheduler *need to know*
about this thing in order to decide where a task runs and which machines
stay powered?"

Two kinds of models live here:
  • Snapshots the harness hands us (MachineInfo, VMInfo, TaskRequirements).
    The harness owns the authoritative values; we only read them.
  • Records the scheduler produces (PlacementOutcome, SchedulerReport).

Reading guide
-------------
Read top-to-bottom. Each model builds on the ones above it.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class CPUArch(str, Enum):
    """
    CPU instruction-set architecture of a machine, VM or task.

    A task compiled for one architecture cannot run on another. Every
    placement decision starts by filtering on this field.
    """
    X86 = "x86"
    ARM = "arm"
    POWER = "power"
    RISCV = "riscv"


class VMType(str, Enum):
    """
    OS / runtime image of a virtual machine.

    A task asks for one VM type. A machine may host several VMs of
    different types side by side.
    """
    LINUX = "linux"
    LINUX_RT = "linux-rt"
    WIN = "win"
    AIX = "aix"


class PowerState(str, Enum):
    """
    Power state of a physical machine.

    ACTIVE  → running, accepts tasks, full power draw.
    STANDBY → low-power idle (S3-like). Cheap to wake, small draw.
    OFF     → powered off (S5-like). No draw, slowest to wake.
    """
    ACTIVE = "active"
    STANDBY = "standby"
    OFF = "off"


class Priority(str, Enum):
    """Scheduling priority handed to the harness with every assignment."""
    HIGH = "high"
    MID = "mid"
    LOW = "low"


class SLAClass(str, Enum):
    """
    Service-level class of a task.

    SLA0 is the strictest. SLA3 is best-effort: it still gets a priority,
    but a miss is never counted as a violation.
    """
    SLA0 = "SLA0"
    SLA1 = "SLA1"
    SLA2 = "SLA2"
    SLA3 = "SLA3"

    @property
    def priority(self) -> Priority:
        return SLA_PRIORITY[self]

    @property
    def has_violation_semantics(self) -> bool:
        return self is not SLAClass.SLA3


SLA_PRIORITY: Dict[SLAClass, Priority] = {
    SLAClass.SLA0: Priority.HIGH,
    SLAClass.SLA1: Priority.MID,
    SLAClass.SLA2: Priority.LOW,
    SLAClass.SLA3: Priority.LOW,
}


class AssignResult(str, Enum):
    """
    Answer of the harness to an assign_task command.

    Rejection is an ordinary outcome, not an exception: the placement
    engine reads the status and moves on to the next candidate.
    """
    ACCEPTED = "accepted"
    REJECTED_CAPACITY = "rejected-capacity"
    REJECTED_MIGRATING = "rejected-migrating"
    REJECTED_POWERED_DOWN = "rejected-powered-down"
    REJECTED_INCOMPATIBLE = "rejected-incompatible"

    @property
    def accepted(self) -> bool:
        return self is AssignResult.ACCEPTED


class PlacementStatus(str, Enum):
    """
    ASSIGNED           → task sits in a VM on an ACTIVE (or waking) machine.
    PENDING_ACTIVATION → recovery asked a machine to wake; the move happens
                         when the power change completes.
    VIOLATION          → no compatible capacity; task left unassigned.
    """
    ASSIGNED = "assigned"
    PENDING_ACTIVATION = "pending-activation"
    VIOLATION = "violation"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: HARNESS SNAPSHOTS
# Read-only views of state the harness owns.
# ─────────────────────────────────────────────────────────────────────────────

class MachineInfo(BaseModel):
    """
    Point-in-time snapshot of one physical machine.

    Fields:
        machine_id     → Stable integer id, 0..N-1.
        cpu            → Architecture. Immutable for the whole run.
        memory_size    → Capacity in MB. Immutable.
        memory_used    → MB currently held by tasks on this machine.
        gpu            → Whether the machine has a GPU. Immutable.
        power_state    → Confirmed state. A requested change only shows up
                         here once the harness completes it.
        transitioning  → True while a requested power change is in flight.
        active_tasks   → Number of tasks on the machine's VMs.
        active_vms     → Number of VMs attached.
        energy_consumed → Joules drawn since the start of the run.
    """
    machine_id: int = Field(..., ge=0)
    cpu: CPUArch
    memory_size: int = Field(..., gt=0, description="Memory capacity in MB")
    memory_used: int = Field(0, ge=0, description="Memory held by tasks in MB")
    gpu: bool = False
    power_state: PowerState = PowerState.ACTIVE
    transitioning: bool = False
    active_tasks: int = Field(0, ge=0)
    active_vms: int = Field(0, ge=0)
    energy_consumed: float = Field(0.0, ge=0.0, description="Joules since start")

    @property
    def memory_free(self) -> int:
        return self.memory_size - self.memory_used


class VMInfo(BaseModel):
    """Snapshot of one VM. machine_id is None until the VM is attached."""
    vm_id: int = Field(..., ge=0)
    vm_type: VMType
    cpu: CPUArch
    machine_id: Optional[int] = None
    active_tasks: List[int] = Field(default_factory=list)
    migrating: bool = False


class TaskRequirements(BaseModel):
    """
    Everything a placement decision needs to know about one task.

    memory is in MB. gpu_capable means the task wants a GPU host; a task
    without that flag still runs fine on a GPU machine.
    """
    task_id: int = Field(..., ge=0)
    required_cpu: CPUArch
    required_vm: VMType = VMType.LINUX
    memory: int = Field(..., gt=0, description="Memory footprint in MB")
    gpu_capable: bool = False
    sla: SLAClass = SLAClass.SLA2

    @property
    def priority(self) -> Priority:
        return self.sla.priority


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: SCHEDULER OUTPUTS
# ─────────────────────────────────────────────────────────────────────────────

class PlacementOutcome(BaseModel):
    """
    Result of one placement (or relocation) attempt.

    attempts counts assign_task commands issued, so a test can see that a
    rejected candidate was retried elsewhere.
    """
    task_id: int
    status: PlacementStatus
    machine_id: Optional[int] = None
    vm_id: Optional[int] = None
    attempts: int = Field(0, ge=0)
    reason: Optional[str] = None

    @property
    def assigned(self) -> bool:
        return self.status is PlacementStatus.ASSIGNED


class SchedulerReport(BaseModel):
    """
    End-of-run summary. Human-readable only; nothing parses it.

    sla_compliance holds the percentage of tasks per class that met their
    service level, as reported by the harness. violations holds the tasks
    the scheduler itself could not place or keep placed.
    """
    policy: str
    finished_at: float = Field(0.0, ge=0.0, description="Simulated time in seconds")
    generated_at: datetime = Field(default_factory=datetime.utcnow)
    total_energy: float = Field(0.0, ge=0.0, description="Cluster energy in joules")
    sla_compliance: Dict[str, float] = Field(default_factory=dict)
    violations: Dict[str, int] = Field(default_factory=dict)
    placements: int = 0
    migrations: int = 0
    activations: int = 0
    deactivations: int = 0
    recovery_attempts: int = 0
    recovery_failures: int = 0
    unknown_lookups: int = 0

    @property
    def total_energy_kwh(self) -> float:
        return self.total_energy / 3.6e6

    @property
    def total_violations(self) -> int:
        return sum(self.violations.values())

    def render(self) -> str:
        """Format the report the way operators read it at the end of a run."""
        lines = ["SLA violation report"]
        for sla in (SLAClass.SLA0, SLAClass.SLA1, SLAClass.SLA2):
            pct = self.sla_compliance.get(sla.value, 100.0)
            lines.append(f"{sla.value}: {pct:.2f}%")
        lines.append(f"Total Energy {self.total_energy_kwh:.4f} KW-Hour")
        lines.append(
            f"Placements {self.placements}, migrations {self.migrations}, "
            f"violations {self.total_violations}"
        )
        lines.append(f"Simulation run finished in {self.finished_at:.2f} seconds")
        return "\n".join(lines)
