"""
dcsched/control_plane/pending.py
────────────────────────────────
PendingTaskTable: tasks Placement deferred, queued against the resource that
will be able to run them.

Why it exists
──────────────
Placement steps 2 and 3 start something slow (a fresh VM, a machine waking
from sleep) and return without admitting the task. Without a table those
tasks are lost unless the fabric redelivers them. Here each one waits in a
FIFO keyed by the VM or machine it is waiting for:

  by VM      → drained once the VM is attached to an active host
               (periodic check, state-change completion)
  by machine → drained when that machine's power-up is confirmed
               (state-change completion)

Each queue is capped. A task that would overflow it is refused and the
caller logs the drop.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Dict, Iterable, List

from dcsched.shared.models import MachineId, TaskId, VMId


class PendingTaskTable:
    """FIFO queues of deferred task ids, one per VM and one per machine."""

    def __init__(self, max_per_resource: int = 64) -> None:
        self._max = max_per_resource
        self._by_vm: Dict[VMId, Deque[TaskId]] = {}
        self._by_machine: Dict[MachineId, Deque[TaskId]] = {}

    # ── Defer ────────────────────────────────────────────────────────────────

    def defer_on_vm(self, vm_id: VMId, task_id: TaskId) -> bool:
        """Queue a task behind a VM. False if the queue is full."""
        return self._push(self._by_vm, vm_id, task_id)

    def defer_on_machine(self, machine_id: MachineId, task_id: TaskId) -> bool:
        """Queue a task behind a machine power-up. False if the queue is full."""
        return self._push(self._by_machine, machine_id, task_id)

    # ── Drain ────────────────────────────────────────────────────────────────

    def pop_vm(self, vm_id: VMId) -> List[TaskId]:
        return list(self._by_vm.pop(vm_id, ()))

    def pop_machine(self, machine_id: MachineId) -> List[TaskId]:
        return list(self._by_machine.pop(machine_id, ()))

    # ── Queries ──────────────────────────────────────────────────────────────

    def vms_with_pending(self) -> List[VMId]:
        return list(self._by_vm)

    def machines_with_pending(self) -> List[MachineId]:
        return list(self._by_machine)

    def has_work(self, machine_id: MachineId, vm_ids: Iterable[VMId] = ()) -> bool:
        """True if anything is queued on the machine or any of the given VMs."""
        if self._by_machine.get(machine_id):
            return True
        return any(self._by_vm.get(vm_id) for vm_id in vm_ids)

    def contains(self, task_id: TaskId) -> bool:
        return any(task_id in q for q in self._by_vm.values()) or any(
            task_id in q for q in self._by_machine.values()
        )

    def __len__(self) -> int:
        return sum(len(q) for q in self._by_vm.values()) + sum(
            len(q) for q in self._by_machine.values()
        )

    # ── Private helpers ───────────────────────────────────────────────────────

    def _push(self, table: Dict[int, Deque[TaskId]], key: int, task_id: TaskId) -> bool:
        queue = table.setdefault(key, deque())
        if len(queue) >= self._max:
            return False
        queue.append(task_id)
        return True
