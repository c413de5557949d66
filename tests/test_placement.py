"""
tests/test_placement.py
────────────────────────
Test suite for the placement ladder (PlacementEngine behind
SchedulerService.new_task).

What we are testing
────────────────────
Every arriving task walks the same four rungs, first match wins:
  1. existing VM     → ASSIGNED
  2. new VM          → VM_CREATED, task deferred
  3. wake a machine  → MACHINE_WOKEN, task deferred
  4. nothing fits    → REJECTED

Test groups
────────────
Group 1: The four rungs       - one scenario per outcome
Group 2: Step-1 selection     - least-loaded VM, ties, GPU, memory, migration
Group 3: Step-2/3 selection   - machine order, in-flight transitions, boundary
Group 4: Deferred tasks       - queueing, drain on tick, retry switched off
"""

from __future__ import annotations

from typing import Optional

from dcsched.control_plane.scheduler_service import SchedulerService
from dcsched.fabric.simulated import MachineSpec, SimulatedFabric
from dcsched.shared.config import SchedulerConfig
from dcsched.shared.models import (
    CPUArch,
    MigrationState,
    PlacementAction,
    PowerState,
    Priority,
    SLATier,
    TaskInfo,
    VMType,
)


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_task(
    task_id: int,
    cpu: CPUArch = CPUArch.X86,
    vm_type: VMType = VMType.LINUX,
    memory_mb: int = 512,
    gpu: bool = False,
    sla: SLATier = SLATier.SLA2,
) -> TaskInfo:
    return TaskInfo(
        task_id=task_id,
        required_cpu=cpu,
        required_vm=vm_type,
        required_memory_mb=memory_mb,
        gpu_capable=gpu,
        required_sla=sla,
    )


def _make_machine(
    cpu: CPUArch = CPUArch.X86,
    memory_mb: int = 16_384,
    gpus: bool = False,
    state: PowerState = PowerState.S0,
) -> MachineSpec:
    return MachineSpec(cpu=cpu, memory_size_mb=memory_mb, gpus=gpus, power_state=state)


def _make_service(
    fabric: SimulatedFabric,
    prewarm: Optional[VMType] = None,
    **overrides,
) -> SchedulerService:
    """Initialised service with every machine in the pool unless overridden."""
    config = SchedulerConfig(active_pool_size=None, prewarm_vm_type=prewarm, **overrides)
    service = SchedulerService(fabric, config)
    service.initialize()
    return service


def _calls(fabric: SimulatedFabric, name: str) -> list:
    return [c for c in fabric.calls if c[0] == name]


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: The four rungs
# ─────────────────────────────────────────────────────────────────────────────

class TestPlacementLadder:
    """Each rung fires only when every cheaper rung failed."""

    def test_existing_vm_is_reused(self) -> None:
        """2 GB SLA0 task, 8 GB free, one idle LINUX VM: assigned, no new VM."""
        fabric = SimulatedFabric([_make_machine(memory_mb=8 * 1024 + 8)])
        service = _make_service(fabric, prewarm=VMType.LINUX)
        fabric.register_task(_make_task(0, memory_mb=2048, sla=SLATier.SLA0))

        outcome = service.new_task(100, 0)

        assert outcome.action is PlacementAction.ASSIGNED
        assert outcome.vm_id == 0
        assert outcome.machine_id == 0
        assert ("add_task", 0, 0, Priority.HIGH) in fabric.calls
        assert len(_calls(fabric, "create_vm")) == 1
        assert service.directory.vm_of(0) == 0

    def test_new_vm_created_on_active_machine(self) -> None:
        """No VM exists yet: create and attach one, defer the task."""
        fabric = SimulatedFabric([_make_machine()])
        service = _make_service(fabric)
        fabric.register_task(_make_task(0))

        outcome = service.new_task(100, 0)

        assert outcome.action is PlacementAction.VM_CREATED
        assert outcome.machine_id == 0
        assert _calls(fabric, "create_vm") == [("create_vm", VMType.LINUX, CPUArch.X86)]
        assert _calls(fabric, "attach_vm") == [("attach_vm", outcome.vm_id, 0)]
        assert _calls(fabric, "add_task") == []
        assert service.directory.host_of(outcome.vm_id) == 0
        assert service.pending.contains(0)

    def test_sleeping_machine_is_woken(self) -> None:
        """No active machine can host the task: request S0 on a sleeping one."""
        fabric = SimulatedFabric([_make_machine(state=PowerState.S5)])
        service = _make_service(fabric)
        fabric.register_task(_make_task(0))

        outcome = service.new_task(100, 0)

        assert outcome.action is PlacementAction.MACHINE_WOKEN
        assert outcome.machine_id == 0
        assert ("set_machine_state", 0, PowerState.S0) in fabric.calls
        assert service.directory.pending_transition(0) is PowerState.S0
        assert _calls(fabric, "create_vm") == []

    def test_task_rejected_when_nothing_fits(self) -> None:
        """An ARM task on an all-X86 cluster is dropped with REJECTED."""
        fabric = SimulatedFabric([_make_machine(), _make_machine()])
        service = _make_service(fabric)
        fabric.register_task(_make_task(0, cpu=CPUArch.ARM))
        calls_before = list(fabric.calls)

        outcome = service.new_task(100, 0)

        assert outcome.action is PlacementAction.REJECTED
        assert fabric.calls == calls_before
        assert service.directory.vm_to_machine == {}
        assert service.directory.task_to_vm == {}
        assert len(service.pending) == 0
        assert service.get_scheduling_metrics()["placements"]["rejected"] == 1

    def test_priority_follows_sla_tier(self) -> None:
        """SLA0 tasks reach the fabric as HIGH, SLA3 tasks as LOW."""
        fabric = SimulatedFabric([_make_machine()])
        service = _make_service(fabric, prewarm=VMType.LINUX)
        fabric.register_task(_make_task(0, sla=SLATier.SLA0))
        fabric.register_task(_make_task(1, sla=SLATier.SLA3))

        service.new_task(100, 0)
        service.new_task(200, 1)

        assert fabric.task_priority(0) is Priority.HIGH
        assert fabric.task_priority(1) is Priority.LOW


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Step-1 selection
# ─────────────────────────────────────────────────────────────────────────────

class TestExistingVMSelection:
    """Step 1 picks the least-loaded eligible VM, ties to the first one."""

    def test_least_loaded_vm_wins_ties_go_first(self) -> None:
        """Two empty VMs: first gets task 1, second gets task 2, first again."""
        fabric = SimulatedFabric([_make_machine(), _make_machine()])
        service = _make_service(fabric, prewarm=VMType.LINUX)
        for task_id in range(3):
            fabric.register_task(_make_task(task_id))

        vms = [service.new_task(100 + task_id, task_id).vm_id for task_id in range(3)]

        assert vms == [0, 1, 0]

    def test_vm_type_must_match(self) -> None:
        """A WIN task never lands on a LINUX VM."""
        fabric = SimulatedFabric([_make_machine()])
        service = _make_service(fabric, prewarm=VMType.LINUX)
        fabric.register_task(_make_task(0, vm_type=VMType.WIN))

        outcome = service.new_task(100, 0)

        assert outcome.action is PlacementAction.VM_CREATED
        assert outcome.vm_id != 0
        assert ("create_vm", VMType.WIN, CPUArch.X86) in fabric.calls

    def test_gpu_task_skips_vm_on_gpu_less_host(self) -> None:
        """GPU tasks only reuse VMs whose host carries GPUs."""
        fabric = SimulatedFabric([_make_machine(), _make_machine(gpus=True)])
        service = _make_service(fabric, prewarm=VMType.LINUX)
        fabric.register_task(_make_task(0, gpu=True))

        outcome = service.new_task(100, 0)

        assert outcome.action is PlacementAction.ASSIGNED
        assert outcome.machine_id == 1

    def test_memory_check_includes_vm_overhead(self) -> None:
        """Task memory plus the 8 MB VM overhead must fit in free memory."""
        fabric = SimulatedFabric([_make_machine(memory_mb=2048)])
        service = _make_service(fabric, prewarm=VMType.LINUX)
        # 2048 total, 8 used by the pre-warmed VM → 2040 free
        fabric.register_task(_make_task(0, memory_mb=2033))
        fabric.register_task(_make_task(1, memory_mb=2032))

        too_big = service.new_task(100, 0)
        just_fits = service.new_task(200, 1)

        assert too_big.action is PlacementAction.REJECTED
        assert just_fits.action is PlacementAction.ASSIGNED

    def test_migrating_vm_is_skipped(self) -> None:
        """A VM marked MIGRATING takes no new tasks until migration completes."""
        fabric = SimulatedFabric([_make_machine(), _make_machine()])
        service = _make_service(fabric, prewarm=VMType.LINUX)
        fabric.register_task(_make_task(0))

        assert service.migrate_vm(50, 0, 1)
        outcome = service.new_task(100, 0)

        assert outcome.vm_id == 1
        assert service.directory.migration_state[0] is MigrationState.MIGRATING


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Step-2/3 selection
# ─────────────────────────────────────────────────────────────────────────────

class TestMachineSelection:
    """Machines are scanned in directory order; first fit wins."""

    def test_new_vm_goes_to_first_fitting_machine(self) -> None:
        """Wrong arch and too-small machines are passed over."""
        fabric = SimulatedFabric([
            _make_machine(cpu=CPUArch.ARM),
            _make_machine(memory_mb=512),
            _make_machine(),
        ])
        service = _make_service(fabric)
        fabric.register_task(_make_task(0, memory_mb=1024))

        outcome = service.new_task(100, 0)

        assert outcome.action is PlacementAction.VM_CREATED
        assert outcome.machine_id == 2

    def test_machine_powering_down_is_not_reused(self) -> None:
        """A machine with a transition in flight is not a step-2 candidate."""
        fabric = SimulatedFabric([_make_machine(memory_mb=256), _make_machine()])
        service = _make_service(fabric)
        service.power.power_down(10, 1)
        fabric.register_task(_make_task(0))

        outcome = service.new_task(100, 0)

        assert outcome.action is PlacementAction.REJECTED
        assert _calls(fabric, "create_vm") == []

    def test_wake_request_not_repeated_while_in_flight(self) -> None:
        """A second task for the same sleeping machine does not re-request S0."""
        fabric = SimulatedFabric([_make_machine(state=PowerState.S5)])
        service = _make_service(fabric)
        fabric.register_task(_make_task(0))
        fabric.register_task(_make_task(1))

        first = service.new_task(100, 0)
        second = service.new_task(200, 1)

        assert first.action is PlacementAction.MACHINE_WOKEN
        assert second.action is PlacementAction.MACHINE_WOKEN
        assert _calls(fabric, "set_machine_state") == [("set_machine_state", 0, PowerState.S0)]
        assert service.pending.pop_machine(0) == [0, 1]

    def test_excluded_architecture_is_never_woken(self) -> None:
        """Machines outside the boundary are slept at init and never chosen."""
        fabric = SimulatedFabric([_make_machine(), _make_machine(cpu=CPUArch.ARM)])
        service = _make_service(fabric, schedulable_architectures=[CPUArch.X86])
        fabric.complete_state_changes()
        fabric.register_task(_make_task(0, cpu=CPUArch.ARM))

        outcome = service.new_task(100, 0)

        assert outcome.action is PlacementAction.REJECTED
        assert not service.directory.is_known_machine(1)


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: Deferred tasks
# ─────────────────────────────────────────────────────────────────────────────

class TestDeferredTasks:
    """Tasks deferred by steps 2 and 3 are handed out once ready."""

    def test_deferred_task_assigned_on_next_tick(self) -> None:
        """periodic_check drains the queue of a freshly attached VM."""
        fabric = SimulatedFabric([_make_machine()])
        service = _make_service(fabric)
        fabric.register_task(_make_task(0))

        created = service.new_task(100, 0)
        service.periodic_check(1_000)

        assert ("add_task", created.vm_id, 0, Priority.MID) in fabric.calls
        assert service.directory.vm_of(0) == created.vm_id
        assert len(service.pending) == 0

    def test_woken_machine_replays_its_tasks(self) -> None:
        """Power-up confirmed → VM created for the waiting task → assigned on tick."""
        fabric = SimulatedFabric([_make_machine(state=PowerState.S5)])
        service = _make_service(fabric)
        fabric.register_task(_make_task(0))

        service.new_task(100, 0)
        for machine_id in fabric.complete_state_changes():
            service.state_change_complete(500, machine_id)

        assert service.directory.is_powered_on(0)
        assert len(service.directory.vms_on(0)) == 1
        assert _calls(fabric, "add_task") == []

        service.periodic_check(1_000)

        assert service.directory.machine_of_task(0) == 0
        assert len(service.pending) == 0

    def test_deferred_task_replaced_when_vm_filled_up(self) -> None:
        """If the VM no longer fits the task, the full ladder runs again."""
        fabric = SimulatedFabric([_make_machine(memory_mb=1024)])
        service = _make_service(fabric)
        fabric.register_task(_make_task(0, memory_mb=600))
        fabric.register_task(_make_task(1, memory_mb=600))

        service.new_task(100, 0)       # VM created, task 0 deferred
        second = service.new_task(200, 1)
        service.periodic_check(1_000)

        assert second.action is PlacementAction.ASSIGNED
        assert service.directory.vm_of(0) is None
        assert service.get_scheduling_metrics()["placements"]["rejected"] == 1

    def test_retry_switched_off_leaves_queue_empty(self) -> None:
        """With retry_deferred_tasks=False nothing is queued."""
        fabric = SimulatedFabric([_make_machine()])
        service = _make_service(fabric, retry_deferred_tasks=False)
        fabric.register_task(_make_task(0))

        outcome = service.new_task(100, 0)
        service.periodic_check(1_000)

        assert outcome.action is PlacementAction.VM_CREATED
        assert "not queued" in outcome.message
        assert len(service.pending) == 0
        assert _calls(fabric, "add_task") == []
