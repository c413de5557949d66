"""
dcsched/fabric - the scheduler's view of the execution environment.

Public API:
    Fabric               - abstract query/control surface the scheduler consumes
    FabricError          - raised by a fabric for calls it cannot honour
    UnknownResourceError - FabricError for an unknown machine, VM or task id
    SimulatedFabric      - in-memory fabric for tests and local runs
    MachineSpec          - one machine of a SimulatedFabric inventory
"""

from dcsched.fabric.base import Fabric, FabricError, UnknownResourceError
from dcsched.fabric.simulated import MachineSpec, SimulatedFabric

__all__ = [
    "Fabric",
    "FabricError",
    "UnknownResourceError",
    "SimulatedFabric",
    "MachineSpec",
]
