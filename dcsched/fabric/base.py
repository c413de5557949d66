"""
dcsched/fabric/base.py
──────────────────────
Fabric: the narrow capability object the scheduler talks to.

The scheduler owns no clock, no machines and no VMs. Everything it can
observe or change goes through one of the calls below. A concrete fabric is
passed into SchedulerService at construction, so tests run against
SimulatedFabric and a real environment plugs in its own adapter.

Two kinds of call
──────────────────
Query calls are side-effect free and return fresh snapshots.

Control calls only *request* a change. Power transitions and migrations take
effect later and are confirmed by a separate event
(state_change_complete / migration_complete). The scheduler never blocks
waiting for them.

Errors
───────
A fabric raises FabricError (or a subclass) for unknown identifiers or
calls it cannot honour. The scheduler catches it at the event-handler
boundary; it never crashes the run.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from dcsched.shared.models import (
    CPUArch,
    MachineId,
    MachineInfo,
    PowerState,
    Priority,
    SLATier,
    TaskId,
    TaskInfo,
    VMId,
    VMInfo,
    VMType,
)


class FabricError(Exception):
    """Raised by a fabric when a query or control call cannot be honoured."""


class UnknownResourceError(FabricError):
    """
    Raised when a call names a machine, VM or task the fabric does not know.

    Attributes:
        kind:        "machine", "vm" or "task".
        resource_id: The identifier that was not found.
    """

    def __init__(self, kind: str, resource_id: int) -> None:
        self.kind = kind
        self.resource_id = resource_id
        super().__init__(f"unknown {kind} {resource_id}")


class Fabric(ABC):
    """Query and control surface consumed by the control plane."""

    # ── Queries ──────────────────────────────────────────────────────────────

    @abstractmethod
    def machine_count(self) -> int:
        """Total machines in the inventory. Ids are 0 … count-1."""

    @abstractmethod
    def get_machine_info(self, machine_id: MachineId) -> MachineInfo:
        raise NotImplementedError

    @abstractmethod
    def get_vm_info(self, vm_id: VMId) -> VMInfo:
        raise NotImplementedError

    @abstractmethod
    def get_task_info(self, task_id: TaskId) -> TaskInfo:
        raise NotImplementedError

    @abstractmethod
    def cluster_energy(self) -> float:
        """Energy consumed by the whole cluster so far, in kWh."""

    @abstractmethod
    def sla_report(self, tier: SLATier) -> float:
        """Percentage of tasks in this tier that met their SLA (0–100)."""

    # ── Controls ─────────────────────────────────────────────────────────────

    @abstractmethod
    def create_vm(self, vm_type: VMType, cpu: CPUArch) -> VMId:
        raise NotImplementedError

    @abstractmethod
    def attach_vm(self, vm_id: VMId, machine_id: MachineId) -> None:
        raise NotImplementedError

    @abstractmethod
    def add_task(self, vm_id: VMId, task_id: TaskId, priority: Priority) -> None:
        raise NotImplementedError

    @abstractmethod
    def shutdown_vm(self, vm_id: VMId) -> None:
        raise NotImplementedError

    @abstractmethod
    def set_machine_state(self, machine_id: MachineId, state: PowerState) -> None:
        """Request a power transition. Confirmed later by state_change_complete."""

    @abstractmethod
    def migrate_vm(self, vm_id: VMId, machine_id: MachineId) -> None:
        """Request a VM move. Confirmed later by migration_complete."""

    @abstractmethod
    def set_task_priority(self, task_id: TaskId, priority: Priority) -> None:
        raise NotImplementedError
