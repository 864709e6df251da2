"""
ecosched/cluster/harness.py
───────────────────────────
ClusterHarness: the contract between the scheduler and whatever runs it.

The harness owns wall-clock (or simulated) time, machine hardware, VM
mechanics and task execution. The scheduler owns decisions. Everything the
scheduler may ask or command is listed here, nothing more.

Synchronous vs asynchronous commands
─────────────────────────────────────
  create_vm          synchronous — returns the new id immediately. The VM is
                     unusable until attach_vm().
  assign_task        synchronous answer (AssignResult). Rejection is a
                     normal outcome; the caller tries the next candidate.
  request_power_state  fire-and-forget. The machine's reported power_state
                     only changes when the harness later delivers a
                     power-state-change-complete event.
  request_migration  fire-and-forget. Confirmed by a migration-complete
                     event for the VM.

Error contract
───────────────
Queries and commands on an id the harness never issued raise
UnknownEntityError. That is a programming error on the caller's side; the
scheduler catches it only at its event boundary, logs it and drops the
event.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

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


class UnknownEntityError(LookupError):
    """
    Raised when a machine, VM or task id is not known to the harness.

    Attributes:
        kind:      "machine", "vm" or "task".
        entity_id: The offending id.
    """

    def __init__(self, kind: str, entity_id: int, message: str = "") -> None:
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(message or f"Unknown {kind} id {entity_id!r}")


class ClusterHarness(ABC):
    """Outbound commands and queries available to the scheduler."""

    # ── Commands ──────────────────────────────────────────────────────────────

    @abstractmethod
    def create_vm(self, vm_type: VMType, cpu: CPUArch) -> int:
        """Create a detached VM and return its id."""

    @abstractmethod
    def attach_vm(self, vm_id: int, machine_id: int) -> None:
        """Bind a VM to a machine. Architectures must match."""

    @abstractmethod
    def assign_task(self, vm_id: int, task_id: int, priority: Priority) -> AssignResult:
        """Add a task to a VM's active set, or say why not."""

    @abstractmethod
    def unassign_task(self, vm_id: int, task_id: int) -> None:
        """Remove a task from a VM's active set."""

    @abstractmethod
    def request_power_state(self, machine_id: int, state: PowerState) -> None:
        """Ask for a power transition. Completion is reported later."""

    @abstractmethod
    def request_migration(self, vm_id: int, target_machine_id: int) -> None:
        """Ask for a live VM migration. Completion is reported later."""

    @abstractmethod
    def shutdown_vm(self, vm_id: int) -> None:
        """Destroy a VM. It must hold no tasks."""

    # ── Queries ───────────────────────────────────────────────────────────────

    @abstractmethod
    def machine_count(self) -> int:
        """Number of machines. Ids are 0..count-1."""

    @abstractmethod
    def machine_info(self, machine_id: int) -> MachineInfo:
        """Current snapshot of one machine."""

    @abstractmethod
    def vm_info(self, vm_id: int) -> VMInfo:
        """Current snapshot of one VM."""

    @abstractmethod
    def task_memory(self, task_id: int) -> int:
        """Memory footprint of a task in MB."""

    @abstractmethod
    def task_requirements(self, task_id: int) -> TaskRequirements:
        """Full requirement record of a task."""

    @abstractmethod
    def machine_energy(self, machine_id: int) -> float:
        """Joules consumed by one machine so far."""

    @abstractmethod
    def cluster_energy(self) -> float:
        """Joules consumed by the whole cluster so far."""

    @abstractmethod
    def sla_compliance(self, sla: SLAClass) -> float:
        """Percentage (0–100) of finished tasks of this class that met their SLA."""
