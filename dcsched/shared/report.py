"""
dcsched/shared/report.py
────────────────────────
ShutdownReport: the end-of-run summary handed back to the fabric.

This is a pass-through. The fabric computes energy and SLA compliance; the
scheduler only collects the numbers at shutdown, logs them and returns them
in one model. None of it feeds back into placement or power decisions.
"""

from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, Field

from dcsched.shared.models import SLATier, Time

BEST_EFFORT_TIERS: List[SLATier] = [SLATier.SLA3]
"""Tiers without a formal compliance target. Reported, never measured."""


class ShutdownReport(BaseModel):
    """
    Final numbers for one scheduler run.

    Fields:
        time              → Simulation time the shutdown event arrived (µs).
        total_energy_kwh  → Cluster energy consumed, as reported by the fabric.
        sla_compliance    → Compliance percentage per measured tier (0–100).
        best_effort_tiers → Tiers reported as best-effort instead of a number.
        vms_shut_down     → How many VMs the scheduler shut down on exit.
    """
    time: Time
    total_energy_kwh: float = Field(0.0, ge=0.0)
    sla_compliance: Dict[SLATier, float] = Field(default_factory=dict)
    best_effort_tiers: List[SLATier] = Field(
        default_factory=lambda: list(BEST_EFFORT_TIERS)
    )
    vms_shut_down: int = Field(0, ge=0)

    @property
    def duration_s(self) -> float:
        return self.time / 1_000_000

    def summary_lines(self) -> List[str]:
        """Human-readable lines, one fact each, in tier order."""
        lines = [
            f"Simulation finished at {self.duration_s:.2f}s",
            f"Total Energy: {self.total_energy_kwh:.4f} KW-Hour",
        ]
        for tier in SLATier:
            if tier in self.best_effort_tiers:
                lines.append(f"{tier.value}: best-effort")
            elif tier in self.sla_compliance:
                lines.append(f"{tier.value}: {self.sla_compliance[tier]:.2f}%")
        return lines
