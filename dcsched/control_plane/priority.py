"""
dcsched/control_plane/priority.py
─────────────────────────────────
Priority classifier: maps a task's SLA tier to the urgency hint the fabric
uses when it time-shares a VM between tasks.

Routing table
──────────────
  SLA0 → HIGH   strictest tier
  SLA1 → HIGH
  SLA2 → MID
  SLA3 → LOW    best-effort
  anything else → MID

An unrecognised tier never rejects a task. MID is the middle of the road:
it neither starves a task whose class we cannot read nor lets it jump ahead
of the strict tiers.

Pure function, no state. Calling it twice on the same tier returns the same
answer. The SLA-violation handler does not go through here; it escalates the
task straight to HIGH.
"""

from __future__ import annotations

from typing import Dict, Union

from dcsched.shared.models import Priority, SLATier

DEFAULT_PRIORITY: Priority = Priority.MID

_PRIORITY_BY_TIER: Dict[SLATier, Priority] = {
    SLATier.SLA0: Priority.HIGH,
    SLATier.SLA1: Priority.HIGH,
    SLATier.SLA2: Priority.MID,
    SLATier.SLA3: Priority.LOW,
}


def classify(sla_tier: Union[SLATier, str, None]) -> Priority:
    """
    Return the scheduling priority for an SLA tier.

    Accepts the enum, its string value ("SLA0"), or anything else the fabric
    might report; unknown values fall back to DEFAULT_PRIORITY.
    """
    try:
        return _PRIORITY_BY_TIER.get(sla_tier, DEFAULT_PRIORITY)
    except TypeError:
        # unhashable input
        return DEFAULT_PRIORITY
