"""
dcsched/shared/models.py
────────────────────────
The data structures every control-plane component reads and writes.

Design philosophy
-----------------
The scheduler does not own machines, VMs or tasks. The fabric does. What
lives here are the *snapshots* the fabric hands back when asked, plus the
small enumerations the decision logic branches on.

Every snapshot answers one question: "What does the scheduler need to know
about this thing, right now, to make a placement or power decision?"

Reading guide
-------------
Read top-to-bottom. Enumerations first, then snapshots, then the outcome
model returned by the event handlers.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, Field

# Opaque identifiers handed out by the fabric.
MachineId = int
VMId = int
TaskId = int

# Simulation time in microseconds.
Time = int


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 1: ENUMERATIONS
# ─────────────────────────────────────────────────────────────────────────────

class CPUArch(str, Enum):
    """
    CPU architecture of a machine, a VM, or a task requirement.

    Placement is exact-match only: an X86 task never lands on an ARM VM.
    """
    ARM = "ARM"
    POWER = "POWER"
    RISCV = "RISCV"
    X86 = "X86"


class VMType(str, Enum):
    """Guest OS flavour of a VM. Tasks require one exact type."""
    LINUX = "LINUX"
    LINUX_RT = "LINUX_RT"
    WIN = "WIN"
    AIX = "AIX"


class SLATier(str, Enum):
    """
    Service class attached to every task, strictest first.

    SLA0 → tightest response-time target.
    SLA1 → tight target.
    SLA2 → relaxed target.
    SLA3 → best-effort. No formal compliance target is reported.
    """
    SLA0 = "SLA0"
    SLA1 = "SLA1"
    SLA2 = "SLA2"
    SLA3 = "SLA3"


class Priority(str, Enum):
    """Scheduling urgency hint passed to the fabric with every task."""
    HIGH = "HIGH"
    MID = "MID"
    LOW = "LOW"


class PowerState(str, Enum):
    """
    Machine power states as the fabric reports them.

    S0 is the only state in which a machine hosts work. Everything else
    (idle sub-states, standby, soft-off) is "not ready" as far as the
    scheduler is concerned. Power-down requests target S5; power-up
    requests target S0.
    """
    S0 = "S0"
    S0I1 = "S0i1"
    S1 = "S1"
    S2 = "S2"
    S3 = "S3"
    S4 = "S4"
    S5 = "S5"

    @property
    def is_ready(self) -> bool:
        return self is PowerState.S0


ACTIVE_STATE = PowerState.S0
SLEEP_STATE = PowerState.S5


class MigrationState(str, Enum):
    """
    Per-VM migration status, tracked in the ResourceDirectory.

    STABLE    → attached to one host, eligible for new tasks.
    MIGRATING → moving between hosts; Placement skips it until the
                fabric reports the migration complete.
    """
    STABLE = "stable"
    MIGRATING = "migrating"


class PlacementAction(str, Enum):
    """
    What the Placement Engine did with an arriving task.

    ASSIGNED      → added to an existing VM (step 1).
    VM_CREATED    → new VM created on an active machine; task deferred (step 2).
    MACHINE_WOKEN → sleeping machine asked to power up; task deferred (step 3).
    REJECTED      → nothing matched; task dropped (step 4).
    ERROR         → the fabric refused a call mid-placement.
    """
    ASSIGNED = "assigned"
    VM_CREATED = "vm-created"
    MACHINE_WOKEN = "machine-woken"
    REJECTED = "rejected"
    ERROR = "error"


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 2: FABRIC SNAPSHOTS
# Read-only views returned by the fabric's query calls. A snapshot is only
# valid for the event handler that requested it.
# ─────────────────────────────────────────────────────────────────────────────

class MachineInfo(BaseModel):
    """
    Point-in-time view of a physical machine.

    Fields:
        machine_id     → Fabric identifier.
        cpu            → Architecture. Must match the task's required_cpu.
        memory_size_mb → Total RAM.
        memory_used_mb → RAM currently committed (VM overheads + task memory).
        gpus           → True if the machine carries GPUs.
        power_state    → Current fabric power state (S0 … S5).
        active_tasks   → Tasks currently running on any VM of this machine.
        active_vms     → VMs on this machine currently running at least one task.
    """
    machine_id: MachineId
    cpu: CPUArch
    memory_size_mb: int = Field(..., ge=0)
    memory_used_mb: int = Field(0, ge=0)
    gpus: bool = False
    power_state: PowerState = PowerState.S0
    active_tasks: int = Field(0, ge=0)
    active_vms: int = Field(0, ge=0)

    @property
    def memory_free_mb(self) -> int:
        """RAM not yet committed. Never negative, even when overcommitted."""
        return max(0, self.memory_size_mb - self.memory_used_mb)

    @property
    def is_active(self) -> bool:
        return self.power_state.is_ready

    @property
    def is_idle(self) -> bool:
        """No running tasks and no busy VMs: a consolidation candidate."""
        return self.active_tasks == 0 and self.active_vms == 0


class VMInfo(BaseModel):
    """
    Point-in-time view of a VM.

    machine_id is None between create_vm and attach_vm. The scheduler issues
    both calls back-to-back, so it never observes that window for VMs it
    created, but a fabric may still report it for VMs mid-migration.
    """
    vm_id: VMId
    cpu: CPUArch
    vm_type: VMType
    machine_id: Optional[MachineId] = None
    active_tasks: List[TaskId] = Field(default_factory=list)

    @property
    def is_attached(self) -> bool:
        return self.machine_id is not None


class TaskInfo(BaseModel):
    """
    Immutable description of one arriving task.

    Fields:
        task_id            → Fabric identifier.
        required_cpu       → Exact architecture the task was built for.
        required_vm        → Exact VM type the task needs.
        required_memory_mb → Memory the task commits while running.
        gpu_capable        → True if the task must run on a GPU machine.
        required_sla       → Service class. Kept as a plain string when the
                             fabric reports a tier we do not recognise, so
                             the classifier can fall back instead of failing.
    """
    task_id: TaskId
    required_cpu: CPUArch
    required_vm: VMType
    required_memory_mb: int = Field(..., ge=0)
    gpu_capable: bool = False
    required_sla: Union[SLATier, str] = Field(SLATier.SLA2, union_mode="left_to_right")


# ─────────────────────────────────────────────────────────────────────────────
# SECTION 3: EVENT OUTCOMES
# ─────────────────────────────────────────────────────────────────────────────

class PlacementOutcome(BaseModel):
    """
    Result of handling one task arrival.

    The fabric is free to ignore it. Tests and the metrics counters use it
    to see which rung of the placement ladder fired.
    """
    task_id: TaskId
    action: PlacementAction
    vm_id: Optional[VMId] = None
    machine_id: Optional[MachineId] = None
    message: str = ""
