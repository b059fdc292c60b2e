"""
Tests for timezone-aware scheduling helpers
"""
import pytest
from datetime import datetime, timedelta, timezone
from freezegun import freeze_time

from utils.time_utils import (
    calculate_scheduled_time,
    format_iso,
    is_within_business_hours,
    now_utc,
    parse_iso_to_utc,
    parse_optional_iso,
    parse_preferred_time,
    parse_time_of_day,
    to_clinic_timezone,
)

CREATED = datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)


class TestParsing:
    """Tests for ISO and HH:MM parsing"""

    def test_now_is_utc_aware(self):
        with freeze_time("2025-01-15 14:30:00"):
            utc_now = now_utc()
            assert utc_now.tzinfo is not None
            assert utc_now.utcoffset() == timedelta(0)
            assert utc_now == datetime(2025, 1, 15, 14, 30, tzinfo=timezone.utc)

    def test_parse_z_suffix(self):
        assert parse_iso_to_utc("2025-01-01T10:00:00Z") == CREATED

    def test_parse_offset_converts_to_utc(self):
        assert parse_iso_to_utc("2025-01-01T02:00:00-08:00") == CREATED

    def test_parse_naive_assumes_utc(self):
        assert parse_iso_to_utc("2025-01-01T10:00:00") == CREATED

    def test_parse_invalid_raises(self):
        with pytest.raises(ValueError):
            parse_iso_to_utc("not a date")

    def test_optional_parse_tolerates_garbage(self):
        assert parse_optional_iso("") is None
        assert parse_optional_iso(None) is None
        assert parse_optional_iso("garbage") is None

    def test_format_iso(self):
        assert format_iso(CREATED) == "2025-01-01T10:00:00+00:00"
        assert format_iso(None) is None

    @pytest.mark.parametrize("value, expected", [
        ("16:00", (16, 0)),
        ("09:05", (9, 5)),
        ("25:00", (10, 0)),
        ("noon", (10, 0)),
        (None, (10, 0)),
    ])
    def test_preferred_time(self, value, expected):
        assert parse_preferred_time(value) == expected

    @pytest.mark.parametrize("value", ["25:00", "10:60", "noon", "10", None])
    def test_strict_time_of_day_rejects(self, value):
        with pytest.raises(ValueError):
            parse_time_of_day(value)

    def test_strict_time_of_day(self):
        assert parse_time_of_day("9:05") == (9, 5)


class TestScheduledTime:
    """Tests for calculate_scheduled_time"""

    def test_delay_and_preferred_time_in_utc(self):
        now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        scheduled = calculate_scheduled_time(CREATED, 3, "16:00", "UTC", now)
        assert scheduled == datetime(2025, 1, 4, 16, 0, tzinfo=timezone.utc)

    def test_target_in_past_rolls_forward_one_day(self):
        now = datetime(2025, 1, 4, 17, 0, tzinfo=timezone.utc)
        scheduled = calculate_scheduled_time(CREATED, 3, "16:00", "UTC", now)
        assert scheduled == datetime(2025, 1, 5, 16, 0, tzinfo=timezone.utc)

    def test_far_past_target_keeps_rolling_until_future(self):
        now = datetime(2025, 1, 10, 20, 0, tzinfo=timezone.utc)
        scheduled = calculate_scheduled_time(CREATED, 1, "10:00", "UTC", now)
        assert scheduled == datetime(2025, 1, 11, 10, 0, tzinfo=timezone.utc)
        assert scheduled >= now

    def test_target_equal_to_now_rolls_forward(self):
        now = datetime(2025, 1, 2, 10, 0, tzinfo=timezone.utc)
        scheduled = calculate_scheduled_time(CREATED, 1, "10:00", "UTC", now)
        assert scheduled == datetime(2025, 1, 3, 10, 0, tzinfo=timezone.utc)

    def test_preferred_time_is_clinic_local(self):
        now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        scheduled = calculate_scheduled_time(CREATED, 2, "16:00", "America/Los_Angeles", now)
        # 16:00 PST is 00:00 UTC the next day
        assert scheduled == datetime(2025, 1, 4, 0, 0, tzinfo=timezone.utc)

    def test_delay_counts_clinic_local_days(self):
        # 02:00 UTC on Jan 1 is still Dec 31 in Los Angeles
        created = datetime(2025, 1, 1, 2, 0, tzinfo=timezone.utc)
        now = datetime(2024, 12, 31, 20, 0, tzinfo=timezone.utc)
        scheduled = calculate_scheduled_time(created, 1, "10:00", "America/Los_Angeles", now)
        assert to_clinic_timezone(scheduled, "America/Los_Angeles").date().isoformat() == "2025-01-01"

    def test_daylight_saving_is_respected(self):
        created = datetime(2025, 7, 1, 18, 0, tzinfo=timezone.utc)
        now = datetime(2025, 7, 1, 18, 0, tzinfo=timezone.utc)
        scheduled = calculate_scheduled_time(created, 1, "10:00", "America/Los_Angeles", now)
        # 10:00 PDT is 17:00 UTC
        assert scheduled == datetime(2025, 7, 2, 17, 0, tzinfo=timezone.utc)

    def test_unknown_timezone_falls_back_to_utc(self):
        now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        scheduled = calculate_scheduled_time(CREATED, 3, "16:00", "Mars/Olympus_Mons", now)
        assert scheduled == datetime(2025, 1, 4, 16, 0, tzinfo=timezone.utc)


class TestBusinessHours:
    """Tests for the clinic-open flag"""

    def test_weekday_inside_hours(self):
        # Thursday 2025-01-02 10:00 PST
        assert is_within_business_hours(datetime(2025, 1, 2, 18, 0, tzinfo=timezone.utc), "America/Los_Angeles")

    def test_weekday_after_hours(self):
        assert not is_within_business_hours(datetime(2025, 1, 3, 2, 0, tzinfo=timezone.utc), "America/Los_Angeles")

    def test_weekend(self):
        # Saturday
        assert not is_within_business_hours(datetime(2025, 1, 4, 12, 0, tzinfo=timezone.utc), "UTC")
