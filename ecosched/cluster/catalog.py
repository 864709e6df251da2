"""
ecosched/cluster/catalog.py
───────────────────────────
ResourceCatalog: the scheduler's read view of the fleet.

Machine hardware never changes during a run, so the catalog reads each
machine once at construction and answers arch / capacity / GPU questions
from that cache. Everything mutable (memory used, power state, energy) is
read from the harness on every call, because the harness owns it.

The catalog also forwards power-state requests. It does not remember them;
pending requests live in PowerManager's side-table.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Dict, List

from ecosched.cluster.harness import ClusterHarness, UnknownEntityError
from ecosched.shared.models import CPUArch, MachineInfo, PowerState

logger = logging.getLogger(__name__)


class ResourceCatalog:
    """
    Read-mostly view over a ClusterHarness.

    Usage:
        catalog = ResourceCatalog(harness)
        catalog.machine_count()             → 4
        catalog.arch_of(2)                  → CPUArch.ARM
        catalog.machine_info(2).memory_used → live value from the harness

    Invalid machine ids raise UnknownEntityError (programming error).
    """

    def __init__(self, harness: ClusterHarness) -> None:
        self._harness = harness
        self._static: Dict[int, MachineInfo] = {}
        for machine_id in range(harness.machine_count()):
            self._static[machine_id] = harness.machine_info(machine_id)

        by_arch: Dict[CPUArch, List[int]] = OrderedDict()
        for machine_id, info in self._static.items():
            by_arch.setdefault(info.cpu, []).append(machine_id)
        self._by_arch = by_arch

        logger.debug(
            "ResourceCatalog: %d machines across %d architectures",
            len(self._static), len(self._by_arch),
        )

    # ── Fleet shape ───────────────────────────────────────────────────────────

    def machine_count(self) -> int:
        return len(self._static)

    def machine_ids(self) -> List[int]:
        return list(self._static)

    def machines_by_arch(self) -> Dict[CPUArch, List[int]]:
        """Machine ids grouped by architecture, each group in id order."""
        return {arch: list(ids) for arch, ids in self._by_arch.items()}

    def compatible_machines(self, cpu: CPUArch, gpu_required: bool = False) -> List[int]:
        """Machines of the given arch (and with a GPU, if asked), id order."""
        return [
            m for m in self._by_arch.get(cpu, [])
            if not gpu_required or self._static[m].gpu
        ]

    # ── Immutable attributes ──────────────────────────────────────────────────

    def _require(self, machine_id: int) -> MachineInfo:
        info = self._static.get(machine_id)
        if info is None:
            raise UnknownEntityError("machine", machine_id)
        return info

    def arch_of(self, machine_id: int) -> CPUArch:
        return self._require(machine_id).cpu

    def capacity_of(self, machine_id: int) -> int:
        return self._require(machine_id).memory_size

    def has_gpu(self, machine_id: int) -> bool:
        return self._require(machine_id).gpu

    def total_capacity(self) -> int:
        return sum(info.memory_size for info in self._static.values())

    # ── Live state (delegated) ────────────────────────────────────────────────

    def machine_info(self, machine_id: int) -> MachineInfo:
        self._require(machine_id)
        return self._harness.machine_info(machine_id)

    def power_state(self, machine_id: int) -> PowerState:
        return self.machine_info(machine_id).power_state

    def energy_consumed(self, machine_id: int) -> float:
        self._require(machine_id)
        return self._harness.machine_energy(machine_id)

    def request_power_state(self, machine_id: int, state: PowerState) -> None:
        """Fire-and-forget. The reported state changes only on completion."""
        self._require(machine_id)
        logger.debug("request_power_state: machine %d → %s", machine_id, state.value)
        self._harness.request_power_state(machine_id, state)

    def __repr__(self) -> str:
        return (
            f"ResourceCatalog(machines={len(self._static)}, "
            f"archs={[a.value for a in self._by_arch]})"
        )
