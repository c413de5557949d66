"""
dcsched/control_plane/directory.py
──────────────────────────────────
ResourceDirectory: the scheduler's in-memory index of machines, VMs and tasks.

What it holds
──────────────
  machines         : ordered list of machine ids the scheduler manages
  vm_to_machine    : VM → hosting machine (insertion-ordered, doubles as the VM list)
  machine_to_vms   : machine → VMs it hosts
  task_to_vm       : admitted task → VM it runs on
  powered_on       : machines the scheduler believes are ready to host work
  transitions      : machine → power state requested but not yet confirmed
  migration_state  : VM → STABLE | MIGRATING

Contract
─────────
Pure bookkeeping. No validation and no fabric calls live here; callers keep
it consistent (create/attach in the fabric first, record second). The one
rule it enforces structurally is that removing a VM removes it from every
index, so no machine ever lists a VM the directory no longer knows.

Thread safety
──────────────
Not thread-safe. It is only mutated from inside event handlers, which the
fabric delivers one at a time. A multi-threaded port must serialise every
handler through one lock or one writer.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Set

from dcsched.shared.models import (
    MachineId,
    MigrationState,
    PowerState,
    TaskId,
    VMId,
)


class ResourceDirectory:
    """Lookup tables for machine ↔ VM ↔ task relationships."""

    def __init__(self) -> None:
        self.machines: List[MachineId] = []
        self.vm_to_machine: Dict[VMId, MachineId] = {}
        self.machine_to_vms: Dict[MachineId, List[VMId]] = {}
        self.task_to_vm: Dict[TaskId, VMId] = {}
        self.powered_on: Set[MachineId] = set()
        self.transitions: Dict[MachineId, PowerState] = {}
        self.migration_state: Dict[VMId, MigrationState] = {}

    # ── Machines ─────────────────────────────────────────────────────────────

    def register_machine(self, machine_id: MachineId) -> None:
        if machine_id in self.machine_to_vms:
            return
        self.machines.append(machine_id)
        self.machine_to_vms[machine_id] = []

    def is_known_machine(self, machine_id: MachineId) -> bool:
        return machine_id in self.machine_to_vms

    def mark_powered_on(self, machine_id: MachineId) -> None:
        self.powered_on.add(machine_id)

    def mark_powered_off(self, machine_id: MachineId) -> None:
        self.powered_on.discard(machine_id)

    def is_powered_on(self, machine_id: MachineId) -> bool:
        return machine_id in self.powered_on

    def begin_transition(self, machine_id: MachineId, target: PowerState) -> None:
        self.transitions[machine_id] = target

    def end_transition(self, machine_id: MachineId) -> Optional[PowerState]:
        return self.transitions.pop(machine_id, None)

    def pending_transition(self, machine_id: MachineId) -> Optional[PowerState]:
        return self.transitions.get(machine_id)

    # ── VMs ──────────────────────────────────────────────────────────────────

    def register_vm(self, vm_id: VMId, machine_id: MachineId) -> None:
        self.vm_to_machine[vm_id] = machine_id
        self.machine_to_vms.setdefault(machine_id, []).append(vm_id)
        self.migration_state[vm_id] = MigrationState.STABLE

    def remove_vm(self, vm_id: VMId) -> Optional[MachineId]:
        """
        Forget a VM everywhere. Task assignments pointing at it go too.

        Returns the machine it was hosted on, or None if it was unknown.
        """
        machine_id = self.vm_to_machine.pop(vm_id, None)
        if machine_id is not None:
            hosted = self.machine_to_vms.get(machine_id, [])
            if vm_id in hosted:
                hosted.remove(vm_id)
        self.migration_state.pop(vm_id, None)
        for task_id in [t for t, v in self.task_to_vm.items() if v == vm_id]:
            del self.task_to_vm[task_id]
        return machine_id

    def move_vm(self, vm_id: VMId, machine_id: MachineId) -> None:
        """Re-home a VM after a migration finished."""
        old = self.vm_to_machine.get(vm_id)
        if old is not None and vm_id in self.machine_to_vms.get(old, []):
            self.machine_to_vms[old].remove(vm_id)
        self.vm_to_machine[vm_id] = machine_id
        self.machine_to_vms.setdefault(machine_id, []).append(vm_id)

    def host_of(self, vm_id: VMId) -> Optional[MachineId]:
        return self.vm_to_machine.get(vm_id)

    def vms_on(self, machine_id: MachineId) -> List[VMId]:
        return list(self.machine_to_vms.get(machine_id, []))

    def known_vms(self) -> List[VMId]:
        return list(self.vm_to_machine)

    def set_migration_state(self, vm_id: VMId, state: MigrationState) -> None:
        self.migration_state[vm_id] = state

    def is_migrating(self, vm_id: VMId) -> bool:
        return self.migration_state.get(vm_id) is MigrationState.MIGRATING

    # ── Tasks ────────────────────────────────────────────────────────────────

    def assign_task(self, task_id: TaskId, vm_id: VMId) -> None:
        self.task_to_vm[task_id] = vm_id

    def release_task(self, task_id: TaskId) -> Optional[VMId]:
        return self.task_to_vm.pop(task_id, None)

    def vm_of(self, task_id: TaskId) -> Optional[VMId]:
        return self.task_to_vm.get(task_id)

    def machine_of_task(self, task_id: TaskId) -> Optional[MachineId]:
        vm_id = self.task_to_vm.get(task_id)
        if vm_id is None:
            return None
        return self.vm_to_machine.get(vm_id)

    def __repr__(self) -> str:
        return (
            f"ResourceDirectory(machines={len(self.machines)}, "
            f"powered_on={len(self.powered_on)}, vms={len(self.vm_to_machine)}, "
            f"tasks={len(self.task_to_vm)})"
        )
