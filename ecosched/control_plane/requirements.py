"""
ecosched/control_plane/requirements.py
──────────────────────────────────────
Requirement resolution: the first gate in the placement pipeline.

resolve_task() reads a task's requirements from the harness. structural_mismatch()
then asks whether the fleet could *ever* host the task, independent of what
is currently powered or free.

What structural_mismatch checks
────────────────────────────────
  1. Architecture: at least one machine of the required CPU arch exists.
  2. GPU: if the task wants a GPU, at least one such machine has one.
  3. Size: the task's memory fits at least one such machine when empty.

A task failing any of these is a service-level violation no matter how
the tiers are arranged, so placement records it straight away instead of
waking machines that cannot help.

What it does NOT check
───────────────────────
  • Current free memory — that is the placement search's job.
  • Power state — the search walks ACTIVE, then STANDBY, then OFF.
"""

from __future__ import annotations

from typing import Optional

from ecosched.cluster.catalog import ResourceCatalog
from ecosched.cluster.harness import ClusterHarness
from ecosched.shared.models import Priority, TaskRequirements


def resolve_task(harness: ClusterHarness, task_id: int) -> TaskRequirements:
    """
    Fetch a task's requirement record from the harness.

    Raises:
        UnknownEntityError: the harness has never heard of task_id.
    """
    return harness.task_requirements(task_id)


def priority_of(requirements: TaskRequirements) -> Priority:
    """SLA0 → HIGH, SLA1 → MID, SLA2 and SLA3 → LOW."""
    return requirements.sla.priority


def structural_mismatch(requirements: TaskRequirements, catalog: ResourceCatalog) -> Optional[str]:
    """
    Return a reason string if no machine in the fleet could ever host the
    task, or None if at least one could.
    """
    candidates = catalog.compatible_machines(requirements.required_cpu)
    if not candidates:
        return f"no machine with arch {requirements.required_cpu.value}"

    if requirements.gpu_capable:
        candidates = [m for m in candidates if catalog.has_gpu(m)]
        if not candidates:
            return f"no GPU machine with arch {requirements.required_cpu.value}"

    if all(catalog.capacity_of(m) < requirements.memory for m in candidates):
        return (
            f"task needs {requirements.memory}MB, largest compatible machine "
            f"has {max(catalog.capacity_of(m) for m in candidates)}MB"
        )
    return None
