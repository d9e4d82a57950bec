"""
Ops Workflow Hub - Leave Calendar Helpers

Date handling for leave requests: parsing client dates, counting business
days, and working out approval priority and deadline.
"""

import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from dateutil import parser as date_parser

from .approval_gateway import ApprovalPriority
from .workflow_errors import ValidationError
from .workflow_records import LeaveType


def parse_leave_date(value, field_name: str = "date") -> date:
    """
    Parse a leave date from a date, datetime or string.

    Raises:
        ValidationError: if the value is missing or not a date
    """
    if value is None or value == "":
        raise ValidationError(f"{field_name} is required", field=field_name)
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date_parser.parse(str(value)).date()
    except (ValueError, OverflowError):
        raise ValidationError(f"Invalid {field_name}: {value}", field=field_name)


def business_days_between(start: date, end: date) -> int:
    """Count Monday-Friday days in the inclusive range [start, end]."""
    if end < start:
        return 0
    days = 0
    current = start
    while current <= end:
        if current.weekday() < 5:
            days += 1
        current += timedelta(days=1)
    return days


def calculate_leave_duration(start: date, end: date, is_half_day: bool = False) -> float:
    """Business days in range, minus half a day for half-day leave. Never negative."""
    duration = float(business_days_between(start, end))
    if is_half_day:
        duration -= 0.5
    return max(duration, 0.0)


def leave_approval_priority(leave_type: str, duration: float) -> ApprovalPriority:
    """Extended leave is HIGH, single days are LOW."""
    if duration > 14:
        return ApprovalPriority.HIGH
    if leave_type == LeaveType.SICK.value and duration > 3:
        return ApprovalPriority.HIGH
    if duration <= 1:
        return ApprovalPriority.LOW
    return ApprovalPriority.MEDIUM


def _start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def calculate_leave_approval_deadline(start_date: date, now: Optional[datetime] = None) -> datetime:
    """
    Deadline for approving a leave request.

    - Starts within a day: 4 hours from now
    - Starts within three days: 17:00 the next day
    - Otherwise: 17:00 two days before the leave starts
    """
    now = now or datetime.now(timezone.utc)
    start = _start_of_day(start_date)
    days_until_start = math.ceil((start - now).total_seconds() / 86400)

    if days_until_start <= 1:
        return now + timedelta(hours=4)
    if days_until_start <= 3:
        return (now + timedelta(days=1)).replace(hour=17, minute=0, second=0, microsecond=0)
    return (start - timedelta(days=2)).replace(hour=17, minute=0, second=0, microsecond=0)


def is_urgent_start(start_date: date, now: Optional[datetime] = None) -> bool:
    """Leave starting within two days needs urgent attention."""
    now = now or datetime.now(timezone.utc)
    return _start_of_day(start_date) <= now + timedelta(days=2)
