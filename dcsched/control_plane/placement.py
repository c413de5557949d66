"""
dcsched/control_plane/placement.py
──────────────────────────────────
The placement layer: decides WHERE an arriving task runs.

The placement ladder
─────────────────────
Strictly ordered, first match wins. Each rung is more expensive than the one
before it (in latency and in energy), so the engine always takes the
cheapest option the cluster currently offers:

  1. Fit an existing VM.
       Scan every known VM. Eligible iff
         - it is attached, not migrating, and its host is in S0,
         - its architecture and VM type match the task exactly,
         - the host has GPUs if the task needs them,
         - host free memory ≥ task memory + per-VM overhead.
       Pick the least-loaded eligible VM (fewest active tasks). Ties go to
       the first one scanned. Assign the task. Done.

  2. Create a VM on an already-active machine.
       Scan every known machine. Eligible iff it is in S0 with no power
       transition pending, matches the architecture, satisfies the GPU
       requirement and has the memory headroom. On the first one, create
       and attach a VM of the required type, record it, and DEFER the task:
       a VM attached inside this event is not guaranteed to accept work yet.

  3. Wake a sleeping machine.
       Scan every known machine for the first one that is not in S0 and
       has the required architecture. Request S0 (unless that request is
       already in flight) and DEFER the task on that machine.

  4. Reject.
       Raise PlacementFailedError. The caller logs one line and drops the task.

Deferred tasks
───────────────
With SchedulerConfig.retry_deferred_tasks on (the default) a deferred task
is queued in the PendingTaskTable under the VM or machine it waits for, and
the LifecycleCoordinator hands it back out once that resource is ready. With
it off, a deferred task is gone unless the fabric redelivers it.

A retried task runs steps 1, 2 and 4 only. A task that cannot use the
machine woken for it is rejected, never deferred onto another wake-up.

Error handling contract
────────────────────────
  PlacementFailedError: no rung matched. Always caught by
                        SchedulerService.new_task(); never escapes to the
                        fabric.
  FabricError:          propagates. The service catches it at the event
                        boundary and reports an ERROR outcome.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import numpy as np

from dcsched.control_plane.directory import ResourceDirectory
from dcsched.control_plane.pending import PendingTaskTable
from dcsched.control_plane.power_manager import PowerManager
from dcsched.control_plane.priority import classify
from dcsched.fabric.base import Fabric
from dcsched.shared.config import SchedulerConfig
from dcsched.shared.models import (
    CPUArch,
    MachineId,
    MachineInfo,
    PlacementAction,
    PlacementOutcome,
    Priority,
    TaskId,
    TaskInfo,
    Time,
    VMId,
    VMInfo,
    VMType,
)

logger = logging.getLogger(__name__)


class PlacementFailedError(Exception):
    """
    Raised when no rung of the placement ladder can take the task.

    This is the "no viable resource" outcome, not a fault: no existing VM
    fits, no active machine can host a new VM, and no sleeping machine of the
    right architecture exists.

    Attributes:
        task_id: The task that could not be placed.
        reason:  Short explanation for the log line.
    """

    def __init__(self, task_id: TaskId, reason: str) -> None:
        self.task_id = task_id
        self.reason = reason
        super().__init__(f"no placement found for task {task_id}: {reason}")


class PlacementEngine:
    """
    Greedy, deterministic task placement over the ResourceDirectory.

    Reads live snapshots from the fabric for every decision and writes the
    result back into the directory. One instance per SchedulerService.
    """

    def __init__(
        self,
        directory: ResourceDirectory,
        fabric: Fabric,
        config: SchedulerConfig,
        power: PowerManager,
        pending: Optional[PendingTaskTable] = None,
    ) -> None:
        self._directory = directory
        self._fabric = fabric
        self._config = config
        self._power = power
        self._pending = pending

    # ── Public API ───────────────────────────────────────────────────────────

    def place(self, now: Time, task_id: TaskId, allow_wake: bool = True) -> PlacementOutcome:
        """
        Run the placement ladder for one task.

        allow_wake=False skips step 3. Tasks retried from the pending table
        use it, so a task no machine can host is rejected instead of waking
        one sleeping machine after another.

        Returns:
            PlacementOutcome with action ASSIGNED, VM_CREATED or MACHINE_WOKEN.

        Raises:
            PlacementFailedError: nothing matched (step 4).
        """
        task = self._fabric.get_task_info(task_id)
        priority = classify(task.required_sla)
        snapshots: Dict[MachineId, MachineInfo] = {}

        # ── Step 1: existing VM ───────────────────────────────────────────────
        vm_id = self.select_existing_vm(task, snapshots)
        if vm_id is not None:
            self.assign(task_id, vm_id, priority)
            logger.info(
                "place: task %d → existing vm %d (t=%d, priority=%s)",
                task_id, vm_id, now, priority.value,
            )
            return PlacementOutcome(
                task_id=task_id,
                action=PlacementAction.ASSIGNED,
                vm_id=vm_id,
                machine_id=self._directory.host_of(vm_id),
                message=f"Assigned to existing VM {vm_id}",
            )

        # ── Step 2: new VM on an active machine ──────────────────────────────
        machine_id = self.select_active_machine(task, snapshots)
        if machine_id is not None:
            new_vm = self.create_vm(machine_id, task.required_vm, task.required_cpu)
            deferred = self._defer_on_vm(new_vm, task_id)
            logger.info(
                "place: created vm %d on machine %d for task %d (t=%d), task deferred",
                new_vm, machine_id, task_id, now,
            )
            return PlacementOutcome(
                task_id=task_id,
                action=PlacementAction.VM_CREATED,
                vm_id=new_vm,
                machine_id=machine_id,
                message=(
                    f"Created VM {new_vm} on machine {machine_id}; task "
                    f"{'queued' if deferred else 'not queued'}"
                ),
            )

        # ── Step 3: wake a sleeping machine ──────────────────────────────────
        machine_id = self.select_sleeping_machine(task, snapshots) if allow_wake else None
        if machine_id is not None:
            self._power.power_up(machine_id)
            deferred = self._defer_on_machine(machine_id, task_id)
            logger.info(
                "place: powering on machine %d for task %d (t=%d), task deferred",
                machine_id, task_id, now,
            )
            return PlacementOutcome(
                task_id=task_id,
                action=PlacementAction.MACHINE_WOKEN,
                machine_id=machine_id,
                message=(
                    f"Powering on machine {machine_id}; task "
                    f"{'queued' if deferred else 'not queued'}"
                ),
            )

        # ── Step 4: reject ───────────────────────────────────────────────────
        raise PlacementFailedError(
            task_id,
            f"cpu={task.required_cpu.value} vm={task.required_vm.value} "
            f"mem={task.required_memory_mb}MB gpu={task.gpu_capable}",
        )

    def select_existing_vm(
        self,
        task: TaskInfo,
        snapshots: Optional[Dict[MachineId, MachineInfo]] = None,
    ) -> Optional[VMId]:
        """
        Step 1: the least-loaded eligible VM, or None.

        np.argmin returns the first minimum, so equal loads resolve to the
        VM that was registered first.
        """
        snapshots = {} if snapshots is None else snapshots
        candidates: List[VMId] = []
        loads: List[int] = []

        for vm_id in self._directory.known_vms():
            if self._directory.is_migrating(vm_id):
                continue
            vm_info = self._fabric.get_vm_info(vm_id)
            if vm_info.machine_id is None:
                continue
            host = self._snapshot(vm_info.machine_id, snapshots)
            if not self.vm_accepts(task, vm_info, host):
                continue
            candidates.append(vm_id)
            loads.append(len(vm_info.active_tasks))

        if not candidates:
            return None
        return candidates[int(np.argmin(np.asarray(loads)))]

    def select_active_machine(
        self,
        task: TaskInfo,
        snapshots: Optional[Dict[MachineId, MachineInfo]] = None,
    ) -> Optional[MachineId]:
        """Step 2: first active machine that can host a new VM for the task."""
        snapshots = {} if snapshots is None else snapshots
        for machine_id in self._directory.machines:
            if self._directory.pending_transition(machine_id) is not None:
                continue
            info = self._snapshot(machine_id, snapshots)
            if not info.is_active or info.cpu != task.required_cpu:
                continue
            if self._host_fits(task, info):
                return machine_id
        return None

    def select_sleeping_machine(
        self,
        task: TaskInfo,
        snapshots: Optional[Dict[MachineId, MachineInfo]] = None,
    ) -> Optional[MachineId]:
        """Step 3: first powered-off machine of the required architecture."""
        snapshots = {} if snapshots is None else snapshots
        for machine_id in self._directory.machines:
            info = self._snapshot(machine_id, snapshots)
            if not info.is_active and info.cpu == task.required_cpu:
                return machine_id
        return None

    def assign(self, task_id: TaskId, vm_id: VMId, priority: Priority) -> None:
        """Hand a task to a VM in the fabric, then record it."""
        self._fabric.add_task(vm_id, task_id, priority)
        self._directory.assign_task(task_id, vm_id)

    def create_vm(self, machine_id: MachineId, vm_type: VMType, cpu: CPUArch) -> VMId:
        """Create and attach a VM, then record it. Both fabric calls go out together."""
        vm_id = self._fabric.create_vm(vm_type, cpu)
        self._fabric.attach_vm(vm_id, machine_id)
        self._directory.register_vm(vm_id, machine_id)
        return vm_id

    def vm_accepts(self, task: TaskInfo, vm_info: VMInfo, host: MachineInfo) -> bool:
        """Step-1 eligibility of one VM, given a fresh snapshot of its host."""
        if self._directory.is_migrating(vm_info.vm_id):
            return False
        if vm_info.machine_id is None or vm_info.machine_id != host.machine_id:
            return False
        if vm_info.cpu != task.required_cpu or vm_info.vm_type != task.required_vm:
            return False
        if not host.is_active:
            return False
        return self._host_fits(task, host)

    # ── Private helpers ───────────────────────────────────────────────────────

    def _host_fits(self, task: TaskInfo, host: MachineInfo) -> bool:
        if task.gpu_capable and not host.gpus:
            return False
        needed = task.required_memory_mb + self._config.vm_memory_overhead_mb
        return host.memory_free_mb >= needed

    def _snapshot(
        self, machine_id: MachineId, snapshots: Dict[MachineId, MachineInfo]
    ) -> MachineInfo:
        # one fabric query per machine per placement
        if machine_id not in snapshots:
            snapshots[machine_id] = self._fabric.get_machine_info(machine_id)
        return snapshots[machine_id]

    def _defer_on_vm(self, vm_id: VMId, task_id: TaskId) -> bool:
        if not self._retrying():
            return False
        if not self._pending.defer_on_vm(vm_id, task_id):
            logger.warning(
                "place: pending queue for vm %d is full, task %d dropped", vm_id, task_id
            )
            return False
        return True

    def _defer_on_machine(self, machine_id: MachineId, task_id: TaskId) -> bool:
        if not self._retrying():
            return False
        if not self._pending.defer_on_machine(machine_id, task_id):
            logger.warning(
                "place: pending queue for machine %d is full, task %d dropped",
                machine_id, task_id,
            )
            return False
        return True

    def _retrying(self) -> bool:
        return self._config.retry_deferred_tasks and self._pending is not None
