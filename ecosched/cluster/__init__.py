"""
ecosched/cluster — everything on the harness side of the scheduler.

Public API:
    ClusterHarness      — abstract outbound commands and queries
    UnknownEntityError  — raised for ids the harness never issued
    ResourceCatalog     — cached read view of the fleet
    SimulatedCluster    — in-memory harness with energy and SLA accounting
    MachineSpec         — hardware of one simulated machine
    TaskSpec            — one simulated task: requirements, arrival, duration
    Simulation          — discrete-event driver for a Scheduler
    dispatch_completion — route one harness completion to its handler
"""

from ecosched.cluster.harness import ClusterHarness, UnknownEntityError
from ecosched.cluster.catalog import ResourceCatalog
from ecosched.cluster.simulated import MachineSpec, SimulatedCluster, TaskSpec
from ecosched.cluster.simulation import Simulation, dispatch_completion

__all__ = [
    "ClusterHarness",
    "UnknownEntityError",
    "ResourceCatalog",
    "MachineSpec",
    "SimulatedCluster",
    "TaskSpec",
    "Simulation",
    "dispatch_completion",
]
