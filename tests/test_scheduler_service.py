"""
tests/test_scheduler_service.py
────────────────────────────────
Test suite for SchedulerService: initialisation, the warning and shutdown
handlers, error containment, metrics, and an end-to-end run.

Test groups
────────────
Group 1: initialize()         - pool size, architecture boundary, standby, pre-warm
Group 2: Warnings             - SLA escalation, memory overcommit
Group 3: Error containment    - fabric errors never escape a handler
Group 4: Shutdown             - VMs shut down, report collected even on fabric errors
Group 5: End-to-end           - a small workload, directory invariants checked
"""

from __future__ import annotations

import logging

import pytest

from dcsched import SchedulerConfig, SchedulerService, SimulatedFabric
from dcsched.control_plane.directory import ResourceDirectory
from dcsched.fabric.base import FabricError
from dcsched.fabric.simulated import MachineSpec
from dcsched.shared.models import (
    CPUArch,
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
    memory_mb: int = 512,
    sla: SLATier = SLATier.SLA2,
) -> TaskInfo:
    return TaskInfo(
        task_id=task_id,
        required_cpu=CPUArch.X86,
        required_vm=VMType.LINUX,
        required_memory_mb=memory_mb,
        required_sla=sla,
    )


def _assert_directory_consistent(directory: ResourceDirectory, fabric: SimulatedFabric) -> None:
    """Every index agrees with every other."""
    for vm_id, machine_id in directory.vm_to_machine.items():
        assert vm_id in directory.machine_to_vms[machine_id]
        assert vm_id in directory.migration_state
    for machine_id, vms in directory.machine_to_vms.items():
        for vm_id in vms:
            assert directory.vm_to_machine[vm_id] == machine_id
    for task_id, vm_id in directory.task_to_vm.items():
        assert vm_id in directory.vm_to_machine
        task = fabric.get_task_info(task_id)
        vm = fabric.get_vm_info(vm_id)
        assert (vm.cpu, vm.vm_type) == (task.required_cpu, task.required_vm)
        assert task_id in vm.active_tasks
    assert directory.powered_on <= set(directory.machines)
    # a sleeping machine is never in the powered-on set
    for machine_id in directory.powered_on:
        assert fabric.get_machine_info(machine_id).is_active


@pytest.fixture
def fabric() -> SimulatedFabric:
    """Four X86 machines, all in S0, 4 GB each."""
    return SimulatedFabric([MachineSpec(memory_size_mb=4096) for _ in range(4)])


# ─────────────────────────────────────────────────────────────────────────────
# Group 1: initialize()
# ─────────────────────────────────────────────────────────────────────────────

class TestInitialize:
    """initialize() resolves the pool from the fabric's inventory."""

    def test_pool_boundary_and_standby(self) -> None:
        """2-machine pool, one ARM machine excluded, one X86 standby."""
        fabric = SimulatedFabric([
            MachineSpec(),
            MachineSpec(),
            MachineSpec(cpu=CPUArch.ARM),
            MachineSpec(),
        ])
        service = SchedulerService(fabric, SchedulerConfig(
            active_pool_size=2,
            schedulable_architectures=[CPUArch.X86],
        ))

        service.initialize()

        assert service.directory.machines == [0, 1, 3]
        assert service.directory.powered_on == {0, 1}
        assert fabric.pending_state(2) is PowerState.S5
        assert fabric.pending_state(3) is PowerState.S5
        assert service.directory.pending_transition(3) is PowerState.S5
        assert service.directory.pending_transition(2) is None

    def test_standby_left_alone_when_disabled(self) -> None:
        fabric = SimulatedFabric([MachineSpec(), MachineSpec()])
        service = SchedulerService(fabric, SchedulerConfig(
            active_pool_size=1,
            sleep_standby_machines=False,
        ))

        service.initialize()

        assert service.directory.machines == [0]
        assert fabric.calls == []

    def test_default_pool_is_sixteen_machines(self) -> None:
        """Beyond the first sixteen, machines start as sleeping standby."""
        fabric = SimulatedFabric([MachineSpec() for _ in range(20)])
        service = SchedulerService(fabric)

        service.initialize()

        assert service.directory.powered_on == set(range(16))
        assert len(service.directory.machines) == 20
        assert [c[1] for c in fabric.calls] == [16, 17, 18, 19]

    def test_prewarm_creates_one_vm_per_active_machine(self, fabric) -> None:
        service = SchedulerService(fabric, SchedulerConfig(prewarm_vm_type=VMType.LINUX))

        service.initialize()

        assert [service.directory.host_of(v) for v in service.directory.known_vms()] == [0, 1, 2, 3]

    def test_second_initialize_is_ignored(self, fabric, caplog) -> None:
        service = SchedulerService(fabric, SchedulerConfig(prewarm_vm_type=VMType.LINUX))
        service.initialize()
        calls = list(fabric.calls)

        with caplog.at_level(logging.WARNING):
            service.initialize()

        assert fabric.calls == calls
        assert "called twice" in caplog.text


# ─────────────────────────────────────────────────────────────────────────────
# Group 2: Warnings
# ─────────────────────────────────────────────────────────────────────────────

class TestWarnings:
    """sla_warning escalates; memory_warning only records."""

    def test_sla_warning_escalates_to_high(self, fabric) -> None:
        service = SchedulerService(fabric, SchedulerConfig(prewarm_vm_type=VMType.LINUX))
        service.initialize()
        fabric.register_task(_make_task(0, sla=SLATier.SLA3))
        service.new_task(100, 0)
        assert fabric.task_priority(0) is Priority.LOW

        service.sla_warning(200, 0)

        assert fabric.task_priority(0) is Priority.HIGH
        assert service.get_scheduling_metrics()["sla_warnings"] == {"SLA3": 1}

    def test_memory_warning_changes_nothing(self, fabric) -> None:
        service = SchedulerService(fabric)
        service.initialize()

        service.memory_warning(100, 2)

        assert fabric.calls == []
        assert service.get_scheduling_metrics()["memory_warnings"] == 1


# ─────────────────────────────────────────────────────────────────────────────
# Group 3: Error containment
# ─────────────────────────────────────────────────────────────────────────────

class TestErrorContainment:
    """A FabricError is logged and contained at the handler boundary."""

    def test_unknown_task_arrival_reports_error(self, fabric, caplog) -> None:
        service = SchedulerService(fabric)
        service.initialize()

        with caplog.at_level(logging.ERROR):
            outcome = service.new_task(100, 404)

        assert outcome.action is PlacementAction.ERROR
        assert "unknown task 404" in outcome.message
        assert service.get_scheduling_metrics()["placements"]["error"] == 1
        assert "task 404" in caplog.text

    def test_sla_warning_for_unknown_task(self, fabric) -> None:
        service = SchedulerService(fabric)
        service.initialize()

        service.sla_warning(100, 404)

        assert service.get_scheduling_metrics()["sla_warnings"] == {}


# ─────────────────────────────────────────────────────────────────────────────
# Group 4: Shutdown
# ─────────────────────────────────────────────────────────────────────────────

class TestShutdown:
    """shutdown() shuts every VM down and reports the fabric's numbers."""

    def test_shutdown_report(self) -> None:
        fabric = SimulatedFabric([MachineSpec(), MachineSpec()])
        service = SchedulerService(fabric, SchedulerConfig(prewarm_vm_type=VMType.LINUX))
        service.initialize()
        fabric.sla_compliance[SLATier.SLA0] = 97.5
        # two machines at 120 W for one hour
        fabric.advance(3_600 * 1_000_000)

        report = service.shutdown(3_600 * 1_000_000)

        assert report.vms_shut_down == 2
        assert fabric.live_vm_ids() == []
        assert service.directory.known_vms() == []
        assert report.total_energy_kwh == pytest.approx(0.24)
        assert report.sla_compliance[SLATier.SLA0] == 97.5
        assert SLATier.SLA3 not in report.sla_compliance
        assert set(report.sla_compliance) == {SLATier.SLA0, SLATier.SLA1, SLATier.SLA2}

    def test_report_survives_fabric_error(self, caplog) -> None:
        """A fabric that cannot report energy still gets every VM shut down."""

        class _NoEnergyFabric(SimulatedFabric):
            def cluster_energy(self) -> float:
                raise FabricError("energy meter offline")

        fabric = _NoEnergyFabric([MachineSpec()])
        service = SchedulerService(fabric, SchedulerConfig(prewarm_vm_type=VMType.LINUX))
        service.initialize()

        with caplog.at_level(logging.ERROR):
            report = service.shutdown(1_000_000)

        assert report.vms_shut_down == 1
        assert fabric.live_vm_ids() == []
        assert report.total_energy_kwh == 0.0
        assert report.sla_compliance == {}
        assert "energy" in caplog.text

    def test_summary_lines(self) -> None:
        fabric = SimulatedFabric([MachineSpec()])
        service = SchedulerService(fabric)
        service.initialize()

        lines = service.shutdown(2_500_000).summary_lines()

        assert lines[0] == "Simulation finished at 2.50s"
        assert "SLA0: 100.00%" in lines
        assert lines[-1] == "SLA3: best-effort"


# ─────────────────────────────────────────────────────────────────────────────
# Group 5: End-to-end
# ─────────────────────────────────────────────────────────────────────────────

class TestEndToEnd:
    """Drive a small workload through every event and check the bookkeeping."""

    def test_workload_consolidates_and_shuts_down(self, fabric) -> None:
        service = SchedulerService(fabric)
        service.initialize()
        now = 0

        # Six 1 GB tasks: the first VM fills after three (3×1024 + 8 ≤ 4096)
        for task_id in range(6):
            fabric.register_task(_make_task(task_id, memory_mb=1024))
        for task_id in range(6):
            now += 1_000
            service.new_task(now, task_id)
            service.periodic_check(now + 1)
            for machine_id in fabric.complete_state_changes():
                service.state_change_complete(now + 2, machine_id)
            _assert_directory_consistent(service.directory, fabric)

        # Machine 0 filled up after three tasks; machine 1 was woken for the rest
        assert service.directory.powered_on == {0, 1}
        assert set(service.directory.task_to_vm) == set(range(6))
        busy = {service.directory.machine_of_task(t) for t in range(6)}
        assert busy <= service.directory.powered_on

        for task_id in range(6):
            now += 1_000
            fabric.finish_task(task_id)
            service.task_complete(now, task_id)
            _assert_directory_consistent(service.directory, fabric)

        for machine_id in fabric.complete_state_changes():
            service.state_change_complete(now, machine_id)

        metrics = service.get_scheduling_metrics()
        assert metrics["assigned_tasks"] == 0
        assert metrics["powered_on"] == 0
        assert metrics["vms"] == 0
        assert metrics["pending_tasks"] == 0
        assert metrics["placements"]["rejected"] == 0

        report = service.shutdown(now)
        assert report.vms_shut_down == 0
