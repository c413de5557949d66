"""
dcsched/control_plane - the scheduling brain.

Public API:

    Bookkeeping:
        ResourceDirectory     - machine / VM / task lookup tables
        PendingTaskTable      - tasks deferred until their VM or machine is ready

    Decisions:
        classify()            - SLA tier → Priority
        PlacementEngine       - the four-step placement ladder
        PlacementFailedError  - raised when no rung of the ladder fits
        PowerManager          - idle-machine consolidation and wake-up

    Events:
        LifecycleCoordinator  - task / migration / state-change completion
        SchedulerService      - the handler surface the fabric calls into
"""

from dcsched.control_plane.directory import ResourceDirectory
from dcsched.control_plane.pending import PendingTaskTable
from dcsched.control_plane.priority import classify
from dcsched.control_plane.placement import PlacementEngine, PlacementFailedError
from dcsched.control_plane.power_manager import PowerManager
from dcsched.control_plane.lifecycle import LifecycleCoordinator
from dcsched.control_plane.scheduler_service import SchedulerService

__all__ = [
    "ResourceDirectory",
    "PendingTaskTable",
    "classify",
    "PlacementEngine",
    "PlacementFailedError",
    "PowerManager",
    "LifecycleCoordinator",
    "SchedulerService",
]
