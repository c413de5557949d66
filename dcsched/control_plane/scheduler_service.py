"""
dcsched/control_plane/scheduler_service.py
──────────────────────────────────────────
SchedulerService: the event-handler surface the fabric calls into.

One instance owns one ResourceDirectory and the components built on it. The
fabric is injected at construction, so tests pass a SimulatedFabric and a
real environment passes its own adapter. There is no module-level singleton.

Event handlers
───────────────
  initialize()                               resolve the machine pool
  new_task(now, task)                        → PlacementEngine
  task_complete(now, task)                   → LifecycleCoordinator → PowerManager
  migration_complete(now, vm)                → LifecycleCoordinator
  state_change_complete(now, machine)        → LifecycleCoordinator
  periodic_check(now)                        drain ready VMs, then PowerManager.sweep
  sla_warning(now, task)                     escalate the task to HIGH
  memory_warning(now, machine)               log only
  shutdown(now)                              shut down every VM, return ShutdownReport

Plus one control operation, migrate_vm(now, vm, machine), which marks the VM
MIGRATING until the fabric reports the move complete.

Error handling
───────────────
"No viable resource" is not an error: new_task() catches
PlacementFailedError, logs one WARNING line and reports REJECTED. A
FabricError from any handler is logged with its traceback and swallowed at
this boundary, so one bad id never takes the scheduler down.

Thread safety
──────────────
Not thread-safe. The fabric delivers one event at a time and each handler
runs to completion. Anything that delivers events concurrently must
serialise calls into this object.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, List, Optional, Set

from dcsched.control_plane.directory import ResourceDirectory
from dcsched.control_plane.lifecycle import LifecycleCoordinator
from dcsched.control_plane.pending import PendingTaskTable
from dcsched.control_plane.placement import PlacementEngine, PlacementFailedError
from dcsched.control_plane.power_manager import PowerManager
from dcsched.fabric.base import Fabric, FabricError
from dcsched.shared.config import SchedulerConfig
from dcsched.shared.models import (
    SLEEP_STATE,
    MachineId,
    MigrationState,
    PlacementAction,
    PlacementOutcome,
    Priority,
    SLATier,
    TaskId,
    Time,
    VMId,
)
from dcsched.shared.report import BEST_EFFORT_TIERS, ShutdownReport

logger = logging.getLogger(__name__)


class SchedulerService:
    """
    Central control plane: owns the directory, dispatches fabric events.

    Attributes:
        config    : SchedulerConfig         - static tunables
        directory : ResourceDirectory       - machine/VM/task bookkeeping
        pending   : PendingTaskTable        - tasks deferred by placement
        power     : PowerManager            - consolidation
        placement : PlacementEngine         - the placement ladder
        lifecycle : LifecycleCoordinator    - completion events
    """

    def __init__(self, fabric: Fabric, config: Optional[SchedulerConfig] = None) -> None:
        self.config = config or SchedulerConfig()
        self._fabric = fabric

        self.directory = ResourceDirectory()
        self.pending = PendingTaskTable(self.config.max_pending_per_resource)
        self.power = PowerManager(self.directory, fabric, self.pending)
        self.placement = PlacementEngine(
            self.directory, fabric, self.config, self.power, self.pending
        )
        self.lifecycle = LifecycleCoordinator(
            self.directory, fabric, self.placement, self.power, self.pending
        )

        self._initialized = False
        self._excluded: Set[MachineId] = set()
        self._placements: Counter = Counter()
        self._sla_warnings: Counter = Counter()
        self._memory_warnings: Counter = Counter()
        self._ticks = 0

    # ── Initialisation ────────────────────────────────────────────────────────

    def initialize(self) -> None:
        """
        Resolve the machine pool from the fabric's inventory.

        For every machine, in id order:
          - outside the architecture boundary → request S5, never scheduled
          - among the first `active_pool_size` schedulable machines → registered;
            marked powered-on if its snapshot says S0 (and pre-warmed if configured)
          - any further schedulable machine → registered as sleeping standby
            (or left alone if sleep_standby_machines is off)
        """
        if self._initialized:
            logger.warning("initialize: called twice, ignoring")
            return

        total = self._fabric.machine_count()
        pool_size = self.config.active_pool_size
        if pool_size is None:
            pool_size = total
        logger.info("initialize: %d machines in inventory, pool size %d", total, pool_size)

        pooled = 0
        for machine_id in range(total):
            info = self._fabric.get_machine_info(machine_id)

            if not self.config.is_schedulable(info.cpu):
                self._excluded.add(machine_id)
                if info.power_state is not SLEEP_STATE:
                    self._fabric.set_machine_state(machine_id, SLEEP_STATE)
                continue

            if pooled < pool_size:
                pooled += 1
                self.directory.register_machine(machine_id)
                if info.is_active:
                    self.directory.mark_powered_on(machine_id)
                    if self.config.prewarm_vm_type is not None:
                        self.placement.create_vm(machine_id, self.config.prewarm_vm_type, info.cpu)
                continue

            if self.config.sleep_standby_machines:
                self.directory.register_machine(machine_id)
                if info.power_state is not SLEEP_STATE:
                    self._fabric.set_machine_state(machine_id, SLEEP_STATE)
                    self.directory.begin_transition(machine_id, SLEEP_STATE)

        self._initialized = True
        logger.info(
            "initialize: %d machines managed (%d powered on, %d VMs), %d excluded",
            len(self.directory.machines),
            len(self.directory.powered_on),
            len(self.directory.vm_to_machine),
            len(self._excluded),
        )

    # ── Task events ──────────────────────────────────────────────────────────

    def new_task(self, now: Time, task_id: TaskId) -> PlacementOutcome:
        """
        Place an arriving task. Never raises.

        Returns:
            PlacementOutcome. REJECTED when nothing fits, ERROR when the
            fabric refused a call along the way.
        """
        logger.debug("new_task: task %d arrived at t=%d", task_id, now)
        try:
            outcome = self.placement.place(now, task_id)
        except PlacementFailedError as e:
            logger.warning("new_task: no placement found for task %d (%s)", task_id, e.reason)
            outcome = PlacementOutcome(
                task_id=task_id,
                action=PlacementAction.REJECTED,
                message=str(e),
            )
        except FabricError as e:
            logger.exception("new_task: fabric error while placing task %d", task_id)
            outcome = PlacementOutcome(
                task_id=task_id,
                action=PlacementAction.ERROR,
                message=f"{e.__class__.__name__}: {e}",
            )

        self._placements[outcome.action] += 1
        return outcome

    def task_complete(self, now: Time, task_id: TaskId) -> None:
        try:
            self.lifecycle.task_complete(now, task_id)
        except FabricError:
            logger.exception("task_complete: fabric error for task %d", task_id)

    def sla_warning(self, now: Time, task_id: TaskId) -> None:
        """Escalate a task at risk of missing its SLA to HIGH priority."""
        try:
            self._fabric.set_task_priority(task_id, Priority.HIGH)
            tier = self._fabric.get_task_info(task_id).required_sla
        except FabricError:
            logger.exception("sla_warning: fabric error for task %d", task_id)
            return
        self._sla_warnings[tier] += 1
        logger.warning(
            "sla_warning: task %d (%s) escalated to HIGH at t=%d",
            task_id, getattr(tier, "value", tier), now,
        )

    # ── Machine / VM events ──────────────────────────────────────────────────

    def state_change_complete(self, now: Time, machine_id: MachineId) -> None:
        if machine_id in self._excluded:
            logger.debug("state_change_complete: excluded machine %d settled", machine_id)
            return
        try:
            for outcome in self.lifecycle.state_change_complete(now, machine_id):
                self._placements[outcome.action] += 1
        except FabricError:
            logger.exception("state_change_complete: fabric error for machine %d", machine_id)

    def migration_complete(self, now: Time, vm_id: VMId) -> None:
        try:
            self.lifecycle.migration_complete(now, vm_id)
        except FabricError:
            logger.exception("migration_complete: fabric error for vm %d", vm_id)

    def memory_warning(self, now: Time, machine_id: MachineId) -> None:
        """The fabric reports a machine overcommitted. Logged, nothing else."""
        self._memory_warnings[machine_id] += 1
        logger.warning("memory_warning: machine %d overcommitted at t=%d", machine_id, now)

    def migrate_vm(self, now: Time, vm_id: VMId, machine_id: MachineId) -> bool:
        """
        Start moving a VM to another machine.

        The VM is ineligible for new tasks until migration_complete arrives.

        Returns:
            True if the migration was requested.
        """
        if vm_id not in self.directory.vm_to_machine:
            logger.warning("migrate_vm: unknown vm %d", vm_id)
            return False
        if self.directory.is_migrating(vm_id):
            logger.warning("migrate_vm: vm %d is already migrating", vm_id)
            return False
        if not self.directory.is_known_machine(machine_id):
            logger.warning("migrate_vm: machine %d is not managed", machine_id)
            return False
        try:
            self._fabric.migrate_vm(vm_id, machine_id)
        except FabricError:
            logger.exception("migrate_vm: fabric refused vm %d → machine %d", vm_id, machine_id)
            return False
        self.directory.set_migration_state(vm_id, MigrationState.MIGRATING)
        logger.info("migrate_vm: vm %d → machine %d requested at t=%d", vm_id, machine_id, now)
        return True

    # ── Periodic ─────────────────────────────────────────────────────────────

    def periodic_check(self, now: Time) -> List[MachineId]:
        """
        Scheduler tick: hand out deferred tasks whose VM is ready, then
        consolidate.

        Returns:
            Machines a power-down was requested for.
        """
        self._ticks += 1
        logger.debug("periodic_check: tick %d at t=%d", self._ticks, now)
        try:
            if self.config.retry_deferred_tasks:
                for outcome in self.lifecycle.drain_ready_vms(now):
                    self._placements[outcome.action] += 1
            return self.power.sweep(now)
        except FabricError:
            logger.exception("periodic_check: fabric error at t=%d", now)
            return []

    # ── Shutdown ─────────────────────────────────────────────────────────────

    def shutdown(self, now: Time) -> ShutdownReport:
        """Shut down every known VM and collect the final report."""
        shut_down = 0
        for vm_id in self.directory.known_vms():
            try:
                self._fabric.shutdown_vm(vm_id)
                shut_down += 1
            except FabricError:
                logger.exception("shutdown: fabric refused to shut down vm %d", vm_id)
            self.directory.remove_vm(vm_id)

        if len(self.pending):
            logger.warning("shutdown: %d deferred task(s) never placed", len(self.pending))

        try:
            energy = self._fabric.cluster_energy()
            compliance = {
                tier: self._fabric.sla_report(tier)
                for tier in SLATier
                if tier not in BEST_EFFORT_TIERS
            }
        except FabricError:
            logger.exception("shutdown: fabric could not report energy and SLA figures")
            energy, compliance = 0.0, {}

        report = ShutdownReport(
            time=now,
            total_energy_kwh=energy,
            sla_compliance=compliance,
            vms_shut_down=shut_down,
        )
        for line in report.summary_lines():
            logger.info("shutdown: %s", line)
        return report

    # ── Metrics ──────────────────────────────────────────────────────────────

    def get_scheduling_metrics(self) -> dict:
        """
        Current scheduling counters.

        Metrics:
            machines:          Machines the scheduler manages.
            powered_on:        Machines in the powered-on set.
            transitioning:     Machines with a power request in flight.
            vms:               VMs in the directory.
            assigned_tasks:    Tasks currently mapped to a VM.
            pending_tasks:     Tasks deferred and not yet placed.
            placements:        Count of placement outcomes per action.
            sla_warnings:      SLA-violation warnings per tier.
            memory_warnings:   Overcommit warnings across all machines.
            ticks:             Periodic checks handled.
        """
        placements: Dict[str, int] = {
            action.value: self._placements.get(action, 0) for action in PlacementAction
        }
        return {
            "machines": len(self.directory.machines),
            "powered_on": len(self.directory.powered_on),
            "transitioning": len(self.directory.transitions),
            "vms": len(self.directory.vm_to_machine),
            "assigned_tasks": len(self.directory.task_to_vm),
            "pending_tasks": len(self.pending),
            "placements": placements,
            "sla_warnings": {
                getattr(tier, "value", str(tier)): count
                for tier, count in self._sla_warnings.items()
            },
            "memory_warnings": sum(self._memory_warnings.values()),
            "ticks": self._ticks,
        }
