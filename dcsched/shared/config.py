"""
dcsched/shared/config.py
────────────────────────
SchedulerConfig: every tunable the control plane reads at initialisation.

Why a model instead of module constants
────────────────────────────────────────
Literal index ranges ("the first 16 machines", "everything from index 24
up is ARM") only hold for one cluster layout. The pool size and the
architecture boundary are declared as validated fields instead and resolved
against the machine snapshots the fabric reports at startup, so the same
scheduler runs unchanged on any inventory.

Usage:
    config = SchedulerConfig(active_pool_size=8,
                             schedulable_architectures=[CPUArch.X86])
    service = SchedulerService(fabric, config)
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from dcsched.shared.models import CPUArch, VMType

DEFAULT_ACTIVE_POOL_SIZE: int = 16
"""Schedulable machines taken into the active pool when none is configured."""

VM_MEMORY_OVERHEAD_MB: int = 8
"""Memory every VM reserves on its host beyond what its tasks commit (MB).

Placement adds this to the task's requirement when checking host headroom,
both for reusing an existing VM and for creating a new one.
"""


class SchedulerConfig(BaseModel):
    """
    Static configuration for one SchedulerService instance.

    Fields:
        active_pool_size          → How many schedulable machines join the
                                    active pool at init. None = all of them.
        schedulable_architectures → Architecture boundary. Machines whose CPU
                                    is outside it are put to sleep at init and
                                    never scheduled. None = no boundary.
        sleep_standby_machines    → Schedulable machines beyond the pool are
                                    registered as standby and put to sleep, so
                                    Placement can wake them on demand. False
                                    leaves them untouched and unmanaged.
        vm_memory_overhead_mb     → Per-VM memory overhead (see above).
        prewarm_vm_type           → If set, one VM of this type (and the host's
                                    architecture) is created on every active
                                    pool machine during init.
        retry_deferred_tasks      → Keep tasks deferred by Placement steps 2/3
                                    and hand them out once the VM or machine
                                    is ready. False drops them after deferral.
        max_pending_per_resource  → Cap on deferred tasks queued against one
                                    machine or VM.
    """
    active_pool_size: Optional[int] = Field(
        DEFAULT_ACTIVE_POOL_SIZE, ge=0,
        description="Number of schedulable machines in the active pool. None = all."
    )
    schedulable_architectures: Optional[List[CPUArch]] = Field(
        None,
        description="Architectures the scheduler may place work on. None = all."
    )
    sleep_standby_machines: bool = Field(
        True,
        description="Register schedulable machines beyond the pool as sleeping standby."
    )
    vm_memory_overhead_mb: int = Field(
        VM_MEMORY_OVERHEAD_MB, ge=0,
        description="Memory reserved per VM on top of task memory (MB)."
    )
    prewarm_vm_type: Optional[VMType] = Field(
        None,
        description="Create one VM of this type on every active pool machine at init."
    )
    retry_deferred_tasks: bool = Field(
        True,
        description="Queue deferred tasks and retry them when their resource is ready."
    )
    max_pending_per_resource: int = Field(
        64, ge=1,
        description="Maximum deferred tasks queued against one machine or VM."
    )

    def is_schedulable(self, cpu: CPUArch) -> bool:
        """True if machines of this architecture are inside the boundary."""
        if self.schedulable_architectures is None:
            return True
        return cpu in self.schedulable_architectures
