"""Tests for the business-hours calculator."""
import pytest
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from followup.business_hours import (
    adjust_to_business_hours, is_within_business_hours,
    next_business_day, weekday_index,
)
from models.schemas import FollowUpConfig, SATURDAY, SUNDAY


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def config() -> FollowUpConfig:
    return FollowUpConfig(organization_id="org-1")  # 09–18, Mon–Fri


class TestWeekdayIndex:
    def test_sunday_is_zero(self):
        assert weekday_index(date(2024, 1, 14)) == SUNDAY

    def test_saturday_is_six(self):
        assert weekday_index(date(2024, 1, 13)) == SATURDAY

    def test_wednesday(self):
        assert weekday_index(datetime(2024, 1, 10, 23, 59)) == 3


class TestAdjustToBusinessHours:
    def test_saturday_afternoon_moves_to_monday_opening(self, config):
        assert adjust_to_business_hours(utc(2024, 1, 13, 14, 0), config) == utc(2024, 1, 15, 9, 0)

    def test_tuesday_evening_moves_to_wednesday_opening(self, config):
        assert adjust_to_business_hours(utc(2024, 1, 9, 20, 0), config) == utc(2024, 1, 10, 9, 0)

    def test_inside_window_unchanged(self, config):
        ts = utc(2024, 1, 10, 10, 0)
        assert adjust_to_business_hours(ts, config) == ts

    def test_before_opening_same_day(self, config):
        assert adjust_to_business_hours(utc(2024, 1, 10, 7, 30), config) == utc(2024, 1, 10, 9, 0)

    def test_closing_hour_is_exclusive(self, config):
        # Friday 18:00 is already closed
        assert adjust_to_business_hours(utc(2024, 1, 12, 18, 0), config) == utc(2024, 1, 15, 9, 0)

    def test_last_minute_of_the_day_kept(self, config):
        ts = utc(2024, 1, 10, 17, 59, 30)
        assert adjust_to_business_hours(ts, config) == ts

    def test_opening_time_has_no_seconds(self, config):
        adjusted = adjust_to_business_hours(utc(2024, 1, 13, 14, 37, 12, 500000), config)
        assert (adjusted.minute, adjusted.second, adjusted.microsecond) == (0, 0, 0)

    def test_disabled_passes_through(self):
        cfg = FollowUpConfig(organization_id="org-1", business_hours_only=False)
        ts = utc(2024, 1, 13, 3, 0)
        assert adjust_to_business_hours(ts, cfg) == ts

    def test_custom_days_include_sunday(self):
        cfg = FollowUpConfig(organization_id="org-1", business_days=[SUNDAY])
        assert adjust_to_business_hours(utc(2024, 1, 13, 14, 0), cfg) == utc(2024, 1, 14, 9, 0)

    def test_custom_hours(self):
        cfg = FollowUpConfig(organization_id="org-1", business_start_hour=13, business_end_hour=15)
        assert adjust_to_business_hours(utc(2024, 1, 10, 15, 0), cfg) == utc(2024, 1, 11, 13, 0)

    def test_idempotent(self, config):
        start = utc(2024, 1, 8, 0, 0)
        for hours in range(0, 24 * 7, 5):
            once = adjust_to_business_hours(start + timedelta(hours=hours), config)
            assert adjust_to_business_hours(once, config) == once

    def test_never_moves_backwards(self, config):
        start = utc(2024, 1, 8, 0, 0)
        for hours in range(0, 24 * 7, 7):
            ts = start + timedelta(hours=hours, minutes=13)
            assert adjust_to_business_hours(ts, config) >= ts


class TestTimezones:
    def test_local_zone_drives_the_window(self, config):
        # 11:00Z is 08:00 in São Paulo (UTC-3): not open yet
        adjusted = adjust_to_business_hours(utc(2024, 1, 10, 11, 0), config, "America/Sao_Paulo")
        assert adjusted == utc(2024, 1, 10, 12, 0)
        assert adjusted.tzinfo == timezone.utc

    def test_keeps_candidate_tzinfo(self, config):
        zone = ZoneInfo("America/Sao_Paulo")
        candidate = datetime(2024, 1, 13, 10, 0, tzinfo=zone)
        adjusted = adjust_to_business_hours(candidate, config, "America/Sao_Paulo")
        assert adjusted == datetime(2024, 1, 15, 9, 0, tzinfo=zone)

    def test_naive_input_treated_as_utc(self, config):
        adjusted = adjust_to_business_hours(datetime(2024, 1, 13, 14, 0), config)
        assert adjusted == datetime(2024, 1, 15, 9, 0)
        assert adjusted.tzinfo is None


class TestHelpers:
    def test_is_within_business_hours(self, config):
        assert is_within_business_hours(utc(2024, 1, 10, 9, 0), config)
        assert not is_within_business_hours(utc(2024, 1, 10, 8, 59), config)
        assert not is_within_business_hours(utc(2024, 1, 14, 12, 0), config)

    def test_next_business_day_skips_weekend(self, config):
        assert next_business_day(date(2024, 1, 12), config) == date(2024, 1, 15)

    def test_next_business_day_is_strictly_after(self, config):
        assert next_business_day(date(2024, 1, 10), config) == date(2024, 1, 11)
