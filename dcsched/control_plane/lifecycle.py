"""
dcsched/control_plane/lifecycle.py
──────────────────────────────────
LifecycleCoordinator: the completion-style events. Each one releases or
re-enables a resource and may hand work back to Placement.

  task_complete(now, task)        forget the assignment, then ask the
                                  PowerManager whether the host is now idle
  migration_complete(now, vm)     VM back to STABLE, re-homed from its snapshot
  state_change_complete(now, m)   corroborate the machine's new power state,
                                  then replay tasks deferred on it (no second
                                  wake-up: a task it cannot host is rejected)
  drain_ready_vms(now)            hand deferred tasks to VMs that are now
                                  attached to an active host

Machine states, as the scheduler sees them
───────────────────────────────────────────
  ASLEEP ── power_up ──▶ TRANSITIONING ── state_change_complete ──▶ ACTIVE
  ACTIVE ── power_down ──▶ TRANSITIONING ── state_change_complete ──▶ ASLEEP

The scheduler never moves a machine between these on its own. TRANSITIONING
is the directory's `transitions` entry; ACTIVE is membership of `powered_on`,
granted only after a snapshot confirms S0.

No timeouts
────────────
A machine whose transition never completes stays TRANSITIONING forever:
it never rejoins the powered-on set and tasks deferred on it stay queued.
There is no escalation path.
"""

from __future__ import annotations

import logging
from typing import List

from dcsched.control_plane.directory import ResourceDirectory
from dcsched.control_plane.pending import PendingTaskTable
from dcsched.control_plane.placement import PlacementEngine, PlacementFailedError
from dcsched.control_plane.power_manager import PowerManager
from dcsched.control_plane.priority import classify
from dcsched.fabric.base import Fabric
from dcsched.shared.models import (
    MachineId,
    MigrationState,
    PlacementAction,
    PlacementOutcome,
    TaskId,
    Time,
    VMId,
)

logger = logging.getLogger(__name__)


class LifecycleCoordinator:
    """Completion-event handling on top of the directory, placement and power."""

    def __init__(
        self,
        directory: ResourceDirectory,
        fabric: Fabric,
        placement: PlacementEngine,
        power: PowerManager,
        pending: PendingTaskTable,
    ) -> None:
        self._directory = directory
        self._fabric = fabric
        self._placement = placement
        self._power = power
        self._pending = pending

    # ── Task completion ───────────────────────────────────────────────────────

    def task_complete(self, now: Time, task_id: TaskId) -> bool:
        """
        Release a finished task and consolidate its host if it went idle.

        Returns:
            True if the host machine was powered down as a result.
        """
        vm_id = self._directory.release_task(task_id)
        if vm_id is None:
            logger.warning(
                "task_complete: task %d at t=%d was never assigned by this scheduler",
                task_id, now,
            )
            return False

        machine_id = self._directory.host_of(vm_id)
        if machine_id is None:
            logger.warning("task_complete: vm %d of task %d has no known host", vm_id, task_id)
            return False

        powered_down = self._power.check_after_completion(now, machine_id)
        logger.info(
            "task_complete: task %d on vm %d (machine %d) complete at t=%d",
            task_id, vm_id, machine_id, now,
        )
        return powered_down

    # ── Migration completion ──────────────────────────────────────────────────

    def migration_complete(self, now: Time, vm_id: VMId) -> None:
        """The VM landed: record its new host and make it eligible again."""
        if vm_id not in self._directory.vm_to_machine:
            logger.warning("migration_complete: unknown vm %d at t=%d", vm_id, now)
            return

        info = self._fabric.get_vm_info(vm_id)
        old_host = self._directory.host_of(vm_id)
        if info.machine_id is not None and info.machine_id != old_host:
            self._directory.move_vm(vm_id, info.machine_id)
        self._directory.set_migration_state(vm_id, MigrationState.STABLE)
        logger.info(
            "migration_complete: vm %d now on machine %s (was %s) at t=%d",
            vm_id, info.machine_id, old_host, now,
        )

    # ── Machine state-change completion ──────────────────────────────────────

    def state_change_complete(self, now: Time, machine_id: MachineId) -> List[PlacementOutcome]:
        """
        Corroborate a finished power transition and release deferred work.

        Returns:
            One PlacementOutcome per deferred task that was handed back out.
        """
        if not self._directory.is_known_machine(machine_id):
            logger.warning("state_change_complete: unknown machine %d at t=%d", machine_id, now)
            return []

        requested = self._directory.end_transition(machine_id)
        wake_queued = self._power.take_queued_wake(machine_id)
        info = self._fabric.get_machine_info(machine_id)

        # VMs created by the replay below are not drained in this same event
        outcomes = self.drain_ready_vms(now)

        if info.is_active:
            self._directory.mark_powered_on(machine_id)
            logger.info("state_change_complete: machine %d is now ON (t=%d)", machine_id, now)
            outcomes.extend(self._replay_machine(now, machine_id))
        else:
            self._directory.mark_powered_off(machine_id)
            logger.info(
                "state_change_complete: machine %d is now %s (t=%d)",
                machine_id, info.power_state.value, now,
            )
            if wake_queued:
                # a wake-up was requested while this power-down was in flight
                self._power.power_up(machine_id)
            elif requested is not None and requested.is_ready:
                logger.warning(
                    "state_change_complete: machine %d asked for %s but reports %s",
                    machine_id, requested.value, info.power_state.value,
                )
        return outcomes

    # ── Deferred work ────────────────────────────────────────────────────────

    def drain_ready_vms(self, now: Time) -> List[PlacementOutcome]:
        """
        Assign tasks waiting on VMs that can now take them.

        A task whose VM no longer fits it (memory went elsewhere meanwhile)
        goes back through placement instead, without waking machines.
        """
        outcomes: List[PlacementOutcome] = []
        for vm_id in self._pending.vms_with_pending():
            if vm_id not in self._directory.vm_to_machine:
                for task_id in self._pending.pop_vm(vm_id):
                    logger.warning(
                        "drain_ready_vms: vm %d is gone, task %d dropped", vm_id, task_id
                    )
                continue

            vm_info = self._fabric.get_vm_info(vm_id)
            if vm_info.machine_id is None or self._directory.is_migrating(vm_id):
                continue
            host = self._fabric.get_machine_info(vm_info.machine_id)
            if not host.is_active:
                continue

            for task_id in self._pending.pop_vm(vm_id):
                task = self._fabric.get_task_info(task_id)
                if self._placement.vm_accepts(task, vm_info, host):
                    self._placement.assign(task_id, vm_id, classify(task.required_sla))
                    logger.info(
                        "drain_ready_vms: deferred task %d → vm %d (t=%d)", task_id, vm_id, now
                    )
                    outcomes.append(PlacementOutcome(
                        task_id=task_id,
                        action=PlacementAction.ASSIGNED,
                        vm_id=vm_id,
                        machine_id=vm_info.machine_id,
                        message=f"Deferred task assigned to VM {vm_id}",
                    ))
                    vm_info = self._fabric.get_vm_info(vm_id)
                    host = self._fabric.get_machine_info(vm_info.machine_id)
                else:
                    outcomes.append(self._replace(now, task_id))
        return outcomes

    def _replay_machine(self, now: Time, machine_id: MachineId) -> List[PlacementOutcome]:
        return [self._replace(now, task_id) for task_id in self._pending.pop_machine(machine_id)]

    def _replace(self, now: Time, task_id: TaskId) -> PlacementOutcome:
        try:
            return self._placement.place(now, task_id, allow_wake=False)
        except PlacementFailedError as e:
            logger.warning("deferred task %d dropped: %s", task_id, e.reason)
            return PlacementOutcome(
                task_id=task_id,
                action=PlacementAction.REJECTED,
                message=str(e),
            )
