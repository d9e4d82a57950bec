"""
Ops Workflow Hub - Leave Conflict Detector

Decides whether a new leave request overlaps leave the same owner already
holds. Pure functions, no I/O: the leave service loads the owner's active
leave from the record store and passes it in.

Overlap rule: [s1, e1] and [s2, e2] conflict iff s1 <= e2 and e1 >= s2.
Both bounds are inclusive, so a request starting on the day an existing
leave ends is a conflict (no same-day handover).
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, List

from .workflow_engine import ACTIVE_LEAVE_STATUSES


@dataclass
class ConflictCheck:
    """Result of a conflict check."""
    conflict: bool = False
    overlapping: List = field(default_factory=list)

    @property
    def overlapping_ids(self) -> List[str]:
        return [record.id for record in self.overlapping]

    def rejection_reason(self) -> str:
        refs = ", ".join(f"#{record_id}" for record_id in self.overlapping_ids)
        return (
            "Automatically rejected due to conflicting leave requests on the same dates. "
            f"Conflicting leaves: {refs}"
        )


def ranges_overlap(start_a: date, end_a: date, start_b: date, end_b: date) -> bool:
    """Inclusive-bounds overlap test."""
    return start_a <= end_b and end_a >= start_b


def has_conflict(candidate, existing_records: Iterable) -> ConflictCheck:
    """
    Check a leave request against the owner's existing leave.

    Only records in ACTIVE_LEAVE_STATUSES take part; pending requests never
    block each other. The candidate itself and soft-deleted records are
    skipped.

    Args:
        candidate: LeaveRecord being created
        existing_records: Other LeaveRecords of the same owner

    Returns:
        ConflictCheck with the overlapping records
    """
    overlapping = []
    for existing in existing_records:
        if existing.id == candidate.id or existing.is_deleted:
            continue
        if existing.status not in ACTIVE_LEAVE_STATUSES:
            continue
        if existing.start_date is None or existing.end_date is None:
            continue
        if ranges_overlap(candidate.start_date, candidate.end_date, existing.start_date, existing.end_date):
            overlapping.append(existing)

    return ConflictCheck(conflict=bool(overlapping), overlapping=overlapping)
