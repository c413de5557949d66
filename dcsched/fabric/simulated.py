"""
dcsched/fabric/simulated.py
───────────────────────────
SimulatedFabric: an in-memory fabric for tests and local runs.

What this is
─────────────
A small, deterministic stand-in for the real execution environment. It keeps
machines, VMs and tasks in dictionaries, answers the query calls from that
state and applies control calls to it.

What is asynchronous here (like the real thing)
────────────────────────────────────────────────
  - set_machine_state() only records the request. The new power state is
    applied when the driver calls complete_state_changes(), which returns
    the machine ids whose transition finished. The driver then delivers
    SchedulerService.state_change_complete() for each of them.
  - migrate_vm() works the same way through complete_migrations().

Everything else (create, attach, add task, shutdown) takes effect at once.

Energy model
─────────────
Deliberately crude: every machine draws a fixed wattage per power state,
integrated over time by advance(now). Good enough to see consolidation pay
off in a test, not meant to match any real hardware.

Inspection
───────────
Every control call is appended to `calls` as a tuple, e.g.
("set_machine_state", 3, PowerState.S5), so tests can assert on exactly
what the scheduler asked for and in what order.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from dcsched.fabric.base import Fabric, FabricError, UnknownResourceError
from dcsched.shared.config import VM_MEMORY_OVERHEAD_MB
from dcsched.shared.models import (
    CPUArch,
    MachineId,
    MachineInfo,
    PowerState,
    Priority,
    SLATier,
    TaskId,
    TaskInfo,
    Time,
    VMId,
    VMInfo,
    VMType,
)

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

DEFAULT_POWER_DRAW_W: Dict[PowerState, float] = {
    PowerState.S0: 120.0,
    PowerState.S0I1: 100.0,
    PowerState.S1: 80.0,
    PowerState.S2: 60.0,
    PowerState.S3: 30.0,
    PowerState.S4: 10.0,
    PowerState.S5: 0.0,
}
"""Watts drawn per power state. S0 is the only state that hosts work."""

JOULES_PER_KWH: float = 3_600_000.0


class MachineSpec(BaseModel):
    """One machine of the simulated inventory."""
    cpu: CPUArch = CPUArch.X86
    memory_size_mb: int = Field(16_384, ge=0)
    gpus: bool = False
    power_state: PowerState = PowerState.S0


class _SimVM:
    def __init__(self, vm_id: VMId, vm_type: VMType, cpu: CPUArch) -> None:
        self.vm_id = vm_id
        self.vm_type = vm_type
        self.cpu = cpu
        self.machine_id: Optional[MachineId] = None
        self.tasks: List[TaskId] = []


class SimulatedFabric(Fabric):
    """
    Deterministic in-memory fabric.

    Usage:
        fabric = SimulatedFabric([MachineSpec(cpu=CPUArch.X86)] * 4)
        fabric.register_task(TaskInfo(task_id=0, ...))
        service = SchedulerService(fabric)
        service.initialize()
        service.new_task(0, 0)
        for machine_id in fabric.complete_state_changes():
            service.state_change_complete(10, machine_id)
    """

    def __init__(
        self,
        machines: List[MachineSpec],
        vm_memory_overhead_mb: int = VM_MEMORY_OVERHEAD_MB,
        power_draw_w: Optional[Dict[PowerState, float]] = None,
    ) -> None:
        self._specs: Dict[MachineId, MachineSpec] = {
            machine_id: spec.model_copy() for machine_id, spec in enumerate(machines)
        }
        self._overhead_mb = vm_memory_overhead_mb
        self._power_draw_w = dict(power_draw_w or DEFAULT_POWER_DRAW_W)

        self._vms: Dict[VMId, _SimVM] = {}
        self._next_vm_id: VMId = 0
        self._tasks: Dict[TaskId, TaskInfo] = {}
        self._task_priority: Dict[TaskId, Priority] = {}

        # Requested but not yet applied
        self._pending_states: Dict[MachineId, PowerState] = {}
        self._pending_migrations: Dict[VMId, MachineId] = {}

        self._now: Time = 0
        self._energy_j: float = 0.0
        self.sla_compliance: Dict[SLATier, float] = {
            tier: 100.0 for tier in SLATier
        }
        self.calls: List[Tuple] = []

    # ── Driver API (not part of the Fabric surface) ───────────────────────────

    def register_task(self, info: TaskInfo) -> TaskId:
        """Make a task known before its arrival event is delivered."""
        self._tasks[info.task_id] = info
        return info.task_id

    def finish_task(self, task_id: TaskId) -> Optional[VMId]:
        """Remove a running task from its VM. Returns the VM it ran on."""
        for vm in self._vms.values():
            if task_id in vm.tasks:
                vm.tasks.remove(task_id)
                return vm.vm_id
        return None

    def complete_state_changes(self) -> List[MachineId]:
        """Apply every pending power transition, in request order."""
        done = list(self._pending_states)
        for machine_id in done:
            self._specs[machine_id].power_state = self._pending_states.pop(machine_id)
        return done

    def complete_migrations(self) -> List[VMId]:
        """Apply every pending migration, in request order."""
        done = list(self._pending_migrations)
        for vm_id in done:
            self._vms[vm_id].machine_id = self._pending_migrations.pop(vm_id)
        return done

    def advance(self, now: Time) -> None:
        """Integrate power draw from the last call up to `now` (µs)."""
        if now <= self._now:
            return
        elapsed_s = (now - self._now) / 1_000_000
        watts = sum(self._power_draw_w[spec.power_state] for spec in self._specs.values())
        self._energy_j += watts * elapsed_s
        self._now = now

    def pending_state(self, machine_id: MachineId) -> Optional[PowerState]:
        return self._pending_states.get(machine_id)

    def task_priority(self, task_id: TaskId) -> Optional[Priority]:
        return self._task_priority.get(task_id)

    def live_vm_ids(self) -> List[VMId]:
        return list(self._vms)

    # ── Queries ──────────────────────────────────────────────────────────────

    def machine_count(self) -> int:
        return len(self._specs)

    def get_machine_info(self, machine_id: MachineId) -> MachineInfo:
        spec = self._machine(machine_id)
        hosted = [vm for vm in self._vms.values() if vm.machine_id == machine_id]
        used = sum(
            self._overhead_mb + sum(self._tasks[t].required_memory_mb for t in vm.tasks)
            for vm in hosted
        )
        return MachineInfo(
            machine_id=machine_id,
            cpu=spec.cpu,
            memory_size_mb=spec.memory_size_mb,
            memory_used_mb=used,
            gpus=spec.gpus,
            power_state=spec.power_state,
            active_tasks=sum(len(vm.tasks) for vm in hosted),
            active_vms=sum(1 for vm in hosted if vm.tasks),
        )

    def get_vm_info(self, vm_id: VMId) -> VMInfo:
        vm = self._vm(vm_id)
        return VMInfo(
            vm_id=vm.vm_id,
            cpu=vm.cpu,
            vm_type=vm.vm_type,
            machine_id=vm.machine_id,
            active_tasks=list(vm.tasks),
        )

    def get_task_info(self, task_id: TaskId) -> TaskInfo:
        if task_id not in self._tasks:
            raise UnknownResourceError("task", task_id)
        return self._tasks[task_id]

    def cluster_energy(self) -> float:
        return self._energy_j / JOULES_PER_KWH

    def sla_report(self, tier: SLATier) -> float:
        return self.sla_compliance.get(tier, 0.0)

    # ── Controls ─────────────────────────────────────────────────────────────

    def create_vm(self, vm_type: VMType, cpu: CPUArch) -> VMId:
        vm_id = self._next_vm_id
        self._next_vm_id += 1
        self._vms[vm_id] = _SimVM(vm_id, vm_type, cpu)
        self.calls.append(("create_vm", vm_type, cpu))
        return vm_id

    def attach_vm(self, vm_id: VMId, machine_id: MachineId) -> None:
        vm = self._vm(vm_id)
        spec = self._machine(machine_id)
        if spec.cpu != vm.cpu:
            raise FabricError(
                f"vm {vm_id} ({vm.cpu.value}) cannot attach to machine "
                f"{machine_id} ({spec.cpu.value})"
            )
        vm.machine_id = machine_id
        self.calls.append(("attach_vm", vm_id, machine_id))

    def add_task(self, vm_id: VMId, task_id: TaskId, priority: Priority) -> None:
        vm = self._vm(vm_id)
        task = self.get_task_info(task_id)
        if vm.machine_id is None:
            raise FabricError(f"vm {vm_id} is not attached")
        if vm_id in self._pending_migrations:
            raise FabricError(f"vm {vm_id} is migrating")
        if not self._specs[vm.machine_id].power_state.is_ready:
            raise FabricError(f"host of vm {vm_id} is not powered on")
        if task.required_cpu != vm.cpu or task.required_vm != vm.vm_type:
            raise FabricError(f"task {task_id} does not match vm {vm_id}")
        vm.tasks.append(task_id)
        self._task_priority[task_id] = priority
        self.calls.append(("add_task", vm_id, task_id, priority))

    def shutdown_vm(self, vm_id: VMId) -> None:
        vm = self._vm(vm_id)
        if vm.tasks:
            logger.debug("SimulatedFabric: vm %d shut down with %d tasks", vm_id, len(vm.tasks))
        del self._vms[vm_id]
        self._pending_migrations.pop(vm_id, None)
        self.calls.append(("shutdown_vm", vm_id))

    def set_machine_state(self, machine_id: MachineId, state: PowerState) -> None:
        self._machine(machine_id)
        self._pending_states[machine_id] = state
        self.calls.append(("set_machine_state", machine_id, state))

    def migrate_vm(self, vm_id: VMId, machine_id: MachineId) -> None:
        vm = self._vm(vm_id)
        spec = self._machine(machine_id)
        if spec.cpu != vm.cpu:
            raise FabricError(f"vm {vm_id} cannot migrate to machine {machine_id}")
        self._pending_migrations[vm_id] = machine_id
        self.calls.append(("migrate_vm", vm_id, machine_id))

    def set_task_priority(self, task_id: TaskId, priority: Priority) -> None:
        self.get_task_info(task_id)
        self._task_priority[task_id] = priority
        self.calls.append(("set_task_priority", task_id, priority))

    # ── Private helpers ───────────────────────────────────────────────────────

    def _machine(self, machine_id: MachineId) -> MachineSpec:
        if machine_id not in self._specs:
            raise UnknownResourceError("machine", machine_id)
        return self._specs[machine_id]

    def _vm(self, vm_id: VMId) -> _SimVM:
        if vm_id not in self._vms:
            raise UnknownResourceError("vm", vm_id)
        return self._vms[vm_id]

    def __repr__(self) -> str:
        return (
            f"SimulatedFabric(machines={len(self._specs)}, vms={len(self._vms)}, "
            f"tasks={len(self._tasks)})"
        )
