"""
dcsched - energy-aware task and VM scheduler for a simulated data center.

Public API:
    SchedulerService  - event-handler surface the fabric calls into
    SchedulerConfig   - static tunables (pool size, architecture boundary, ...)
    SimulatedFabric   - in-memory fabric for tests and local runs

Usage:
    from dcsched import SchedulerService, SimulatedFabric
    from dcsched.fabric import MachineSpec

    fabric = SimulatedFabric([MachineSpec()] * 4)
    service = SchedulerService(fabric)
    service.initialize()
"""

from dcsched.control_plane.scheduler_service import SchedulerService
from dcsched.fabric.simulated import SimulatedFabric
from dcsched.shared.config import SchedulerConfig

__all__ = ["SchedulerService", "SchedulerConfig", "SimulatedFabric"]
