"""
Tests for leave date helpers: business-day duration, approval priority and deadline.
"""
import pytest
from datetime import date, datetime, timedelta, timezone

from services.approval_gateway import ApprovalPriority
from services.leave_calendar import (
    business_days_between,
    calculate_leave_approval_deadline,
    calculate_leave_duration,
    is_urgent_start,
    leave_approval_priority,
    parse_leave_date,
)
from services.workflow_errors import ValidationError

# 2024-07-15 is a Monday
MONDAY = date(2024, 7, 15)


class TestDuration:

    def test_full_week(self):
        assert business_days_between(MONDAY, date(2024, 7, 19)) == 5

    def test_weekend_not_counted(self):
        assert business_days_between(MONDAY, date(2024, 7, 21)) == 5
        assert business_days_between(date(2024, 7, 20), date(2024, 7, 21)) == 0

    def test_two_weeks(self):
        assert business_days_between(MONDAY, date(2024, 7, 26)) == 10

    def test_reversed_range_is_zero(self):
        assert business_days_between(date(2024, 7, 19), MONDAY) == 0

    def test_half_day(self):
        assert calculate_leave_duration(MONDAY, MONDAY, is_half_day=True) == 0.5
        assert calculate_leave_duration(MONDAY, date(2024, 7, 19), is_half_day=True) == 4.5

    def test_half_day_on_weekend_is_zero(self):
        saturday = date(2024, 7, 20)
        assert calculate_leave_duration(saturday, saturday, is_half_day=True) == 0.0



class TestPriority:

    def test_long_leave_is_high(self):
        assert leave_approval_priority("ANNUAL", 15) == ApprovalPriority.HIGH

    def test_long_sick_leave_is_high(self):
        assert leave_approval_priority("SICK", 4) == ApprovalPriority.HIGH

    def test_short_sick_leave_is_medium(self):
        assert leave_approval_priority("SICK", 3) == ApprovalPriority.MEDIUM

    def test_single_day_is_low(self):
        assert leave_approval_priority("ANNUAL", 1) == ApprovalPriority.LOW
        assert leave_approval_priority("ANNUAL", 0.5) == ApprovalPriority.LOW


class TestDeadline:
    NOW = datetime(2024, 7, 10, 9, 0, tzinfo=timezone.utc)

    def test_starting_tomorrow_gets_four_hours(self):
        deadline = calculate_leave_approval_deadline(date(2024, 7, 11), now=self.NOW)
        assert deadline == self.NOW + timedelta(hours=4)

    def test_starting_within_three_days_gets_next_day_five_pm(self):
        deadline = calculate_leave_approval_deadline(date(2024, 7, 13), now=self.NOW)
        assert deadline == datetime(2024, 7, 11, 17, 0, tzinfo=timezone.utc)

    def test_later_start_gets_two_days_before(self):
        deadline = calculate_leave_approval_deadline(date(2024, 7, 20), now=self.NOW)
        assert deadline == datetime(2024, 7, 18, 17, 0, tzinfo=timezone.utc)

    def test_urgent_start(self):
        assert is_urgent_start(date(2024, 7, 12), now=self.NOW) is True
        assert is_urgent_start(date(2024, 7, 20), now=self.NOW) is False


class TestParseLeaveDate:

    def test_iso_string(self):
        assert parse_leave_date("2024-07-15") == MONDAY

    def test_datetime_string(self):
        assert parse_leave_date("2024-07-15T08:30:00Z") == MONDAY

    def test_date_passthrough(self):
        assert parse_leave_date(MONDAY) == MONDAY

    def test_missing(self):
        with pytest.raises(ValidationError) as exc:
            parse_leave_date(None, "start_date")
        assert exc.value.field == "start_date"

    def test_garbage(self):
        with pytest.raises(ValidationError):
            parse_leave_date("not a date", "end_date")
