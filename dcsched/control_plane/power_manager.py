"""
dcsched/control_plane/power_manager.py
──────────────────────────────────────
PowerManager: consolidation. Puts idle machines to sleep and wakes machines
when Placement needs them.

Entry points
─────────────
  sweep(now)                          periodic; every scheduler tick
  check_after_completion(now, m)      inline, right after a task completes
  power_up(m)                         on demand, from Placement step 3

A machine is a power-down candidate when its LIVE snapshot says it is in S0
with zero active tasks and zero busy VMs, the directory has it in the
powered-on set, no transition is already in flight for it, and no deferred
task is waiting on it or on one of its VMs. Snapshots are always fresh:
cached activity counts go stale as soon as the fabric finishes a task.

Powering down
──────────────
  1. Shut down every VM the directory lists on the machine and forget it.
  2. Request S5.
  3. Drop the machine from the powered-on set and remember the transition.

The request is fire-and-forget. The fabric confirms it later through
state_change_complete, which the LifecycleCoordinator handles.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Set

from dcsched.control_plane.directory import ResourceDirectory
from dcsched.control_plane.pending import PendingTaskTable
from dcsched.fabric.base import Fabric
from dcsched.shared.models import (
    ACTIVE_STATE,
    SLEEP_STATE,
    MachineId,
    MachineInfo,
    Time,
)

logger = logging.getLogger(__name__)


class PowerManager:
    """Power-state decisions over the machines in the ResourceDirectory."""

    def __init__(
        self,
        directory: ResourceDirectory,
        fabric: Fabric,
        pending: Optional[PendingTaskTable] = None,
    ) -> None:
        self._directory = directory
        self._fabric = fabric
        self._pending = pending
        self._queued_wakes: Set[MachineId] = set()

    # ── Public API ───────────────────────────────────────────────────────────

    def sweep(self, now: Time) -> List[MachineId]:
        """
        Put every idle powered-on machine to sleep.

        Returns:
            Machine ids a power-down was requested for, in directory order.
        """
        powered_down: List[MachineId] = []
        for machine_id in list(self._directory.machines):
            if not self._directory.is_powered_on(machine_id):
                continue
            info = self._fabric.get_machine_info(machine_id)
            if self._can_power_down(machine_id, info):
                self.power_down(now, machine_id)
                powered_down.append(machine_id)

        if powered_down:
            logger.info(
                "sweep: t=%d powering down %d idle machine(s): %s",
                now, len(powered_down), powered_down,
            )
        return powered_down

    def check_after_completion(self, now: Time, machine_id: MachineId) -> bool:
        """
        Power the machine down if the completed task was its last work.

        Returns:
            True if a power-down was requested.
        """
        info = self._fabric.get_machine_info(machine_id)
        if not self._can_power_down(machine_id, info):
            return False
        self.power_down(now, machine_id)
        logger.info(
            "check_after_completion: t=%d machine %d idle, powering down",
            now, machine_id,
        )
        return True

    def power_down(self, now: Time, machine_id: MachineId) -> None:
        """Shut down the machine's VMs, request S5, update bookkeeping."""
        for vm_id in self._directory.vms_on(machine_id):
            self._fabric.shutdown_vm(vm_id)
            self._directory.remove_vm(vm_id)
            if self._pending is not None:
                for task_id in self._pending.pop_vm(vm_id):
                    logger.warning(
                        "power_down: task %d was waiting on vm %d, dropped",
                        task_id, vm_id,
                    )
        self._fabric.set_machine_state(machine_id, SLEEP_STATE)
        self._directory.mark_powered_off(machine_id)
        self._directory.begin_transition(machine_id, SLEEP_STATE)
        logger.debug("power_down: t=%d machine %d → %s", now, machine_id, SLEEP_STATE.value)

    def power_up(self, machine_id: MachineId) -> bool:
        """
        Request S0 for a machine.

        If a power-down is still in flight the request is queued behind it
        and issued from state_change_complete once S5 is confirmed.

        Returns:
            True if an S0 request was sent to the fabric now.
        """
        pending = self._directory.pending_transition(machine_id)
        if pending is ACTIVE_STATE:
            logger.debug("power_up: machine %d already powering on", machine_id)
            return False
        if pending is not None:
            self._queued_wakes.add(machine_id)
            logger.debug(
                "power_up: machine %d still moving to %s, wake-up queued",
                machine_id, pending.value,
            )
            return False
        self._fabric.set_machine_state(machine_id, ACTIVE_STATE)
        self._directory.begin_transition(machine_id, ACTIVE_STATE)
        return True

    def take_queued_wake(self, machine_id: MachineId) -> bool:
        """Pop a wake-up queued behind an in-flight transition. True if there was one."""
        if machine_id in self._queued_wakes:
            self._queued_wakes.discard(machine_id)
            return True
        return False

    # ── Private helpers ───────────────────────────────────────────────────────

    def _can_power_down(self, machine_id: MachineId, info: MachineInfo) -> bool:
        if not info.is_active or not info.is_idle:
            return False
        if not self._directory.is_powered_on(machine_id):
            return False
        if self._directory.pending_transition(machine_id) is not None:
            return False
        if self._pending is not None and self._pending.has_work(
            machine_id, self._directory.vms_on(machine_id)
        ):
            return False
        return True
