"""Tests for weekly availability windows and the overlap search."""
from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select

from matchmaker.availability import (
    Window,
    find_overlap,
    format_hhmm,
    next_occurrence,
    parse_hhmm,
    set_windows,
    sunday_based_weekday,
    windows_for,
)
from matchmaker.models import AvailabilityWindow
from matchmaker.tests.conftest import add_user, add_window, utc

# 2024-06-02 is a Sunday.
SUNDAY_MORNING = utc(2024, 6, 2, 8, 0)
MONDAY = 1
TUESDAY = 2


def _w(day: int, start: str, end: str, tz: str = "UTC") -> Window:
    return Window(day, parse_hhmm(start), parse_hhmm(end), tz)


class TestTimeParsing:
    def test_parse_and_format(self):
        assert parse_hhmm("09:05") == 545
        assert parse_hhmm("9:05") == 545
        assert parse_hhmm("17:30:00") == 1050
        assert parse_hhmm("24:00") == 1440
        assert format_hhmm(545) == "09:05"

    @pytest.mark.parametrize("raw", ["", "noon", "25:00", "12:60", "24:30"])
    def test_parse_rejects_invalid(self, raw):
        with pytest.raises(ValueError):
            parse_hhmm(raw)

    def test_sunday_is_zero(self):
        assert sunday_based_weekday(SUNDAY_MORNING) == 0
        assert sunday_based_weekday(SUNDAY_MORNING + timedelta(days=6)) == 6


class TestNextOccurrence:
    def test_later_this_week(self):
        assert next_occurrence(MONDAY, 600, "UTC", SUNDAY_MORNING) == utc(2024, 6, 3, 10, 0)

    def test_today_before_start(self):
        now = utc(2024, 6, 3, 9, 0)
        assert next_occurrence(MONDAY, 600, "UTC", now) == utc(2024, 6, 3, 10, 0)

    def test_today_already_started_rolls_a_week(self):
        now = utc(2024, 6, 3, 10, 15)
        assert next_occurrence(MONDAY, 600, "UTC", now) == utc(2024, 6, 10, 10, 0)

    def test_wall_clock_in_window_timezone(self):
        # 09:00 EDT on Monday 2024-06-03 is 13:00 UTC
        now = utc(2024, 6, 2, 12, 0)
        assert next_occurrence(MONDAY, 540, "America/New_York", now) == utc(2024, 6, 3, 13, 0)

    def test_unknown_timezone_falls_back_to_utc(self):
        assert next_occurrence(MONDAY, 600, "Mars/Olympus", SUNDAY_MORNING) == utc(2024, 6, 3, 10, 0)


class TestFindOverlap:
    def test_intersection_start_and_slot_length(self):
        slot = find_overlap([_w(MONDAY, "09:00", "12:00")], [_w(MONDAY, "10:00", "11:00")], SUNDAY_MORNING)
        assert slot is not None
        assert slot.start == utc(2024, 6, 3, 10, 0)
        assert slot.end - slot.start == timedelta(minutes=30)

    def test_custom_slot_length(self):
        slot = find_overlap(
            [_w(MONDAY, "09:00", "12:00")], [_w(MONDAY, "09:00", "12:00")], SUNDAY_MORNING, slot_minutes=45,
        )
        assert slot.end - slot.start == timedelta(minutes=45)

    def test_no_common_day(self):
        assert find_overlap([_w(MONDAY, "09:00", "12:00")], [_w(TUESDAY, "09:00", "12:00")], SUNDAY_MORNING) is None

    def test_touching_windows_do_not_overlap(self):
        assert find_overlap([_w(MONDAY, "09:00", "10:00")], [_w(MONDAY, "10:00", "11:00")], SUNDAY_MORNING) is None

    def test_intersection_shorter_than_slot_is_skipped(self):
        assert find_overlap([_w(MONDAY, "09:00", "09:10")], [_w(MONDAY, "09:00", "12:00")], SUNDAY_MORNING) is None

    def test_short_intersection_falls_through_to_next_window(self):
        a = [_w(MONDAY, "09:00", "09:10"), _w(TUESDAY, "13:00", "14:00")]
        b = [_w(MONDAY, "09:00", "12:00"), _w(TUESDAY, "13:30", "17:00")]
        slot = find_overlap(a, b, SUNDAY_MORNING)
        assert slot.start == utc(2024, 6, 4, 13, 30)
        assert slot.end == utc(2024, 6, 4, 14, 0)

    def test_empty_windows(self):
        assert find_overlap([], [_w(MONDAY, "09:00", "10:00")], SUNDAY_MORNING) is None

    def test_first_window_of_a_wins(self):
        a = [_w(TUESDAY, "14:00", "16:00"), _w(MONDAY, "09:00", "12:00")]
        b = [_w(MONDAY, "09:00", "12:00"), _w(TUESDAY, "15:00", "16:00")]
        slot = find_overlap(a, b, SUNDAY_MORNING)
        assert slot.start == utc(2024, 6, 4, 15, 0)

    def test_projected_in_a_timezone(self):
        a = [_w(MONDAY, "09:00", "12:00", "Europe/Berlin")]
        b = [_w(MONDAY, "10:00", "12:00", "UTC")]
        slot = find_overlap(a, b, SUNDAY_MORNING)
        # 10:00 CEST == 08:00 UTC
        assert slot.start == utc(2024, 6, 3, 8, 0)


class TestPersistence:
    def test_set_windows_replaces_existing(self, session):
        user = add_user(session, role="investor")
        add_window(session, user.id, 5, "08:00", "09:00")
        session.commit()

        rows = set_windows(session, user.id, [
            {"day_of_week": 1, "start_time": "9:00", "end_time": "12:00", "timezone": "Europe/Berlin"},
            {"day_of_week": 3, "start_time": "14:00", "end_time": "15:30"},
        ])

        assert [(r.day_of_week, r.start_time) for r in rows] == [(1, "09:00"), (3, "14:00")]
        stored = session.execute(
            select(AvailabilityWindow).where(AvailabilityWindow.user_id == user.id)
        ).scalars().all()
        assert sorted(r.day_of_week for r in stored) == [1, 3]
        assert windows_for(session, user.id)[0] == Window(1, 540, 720, "Europe/Berlin")

    def test_set_windows_empty_clears(self, session):
        user = add_user(session, role="company")
        add_window(session, user.id, 2, "08:00", "09:00")
        session.commit()
        assert set_windows(session, user.id, []) == []
        assert windows_for(session, user.id) == []

    @pytest.mark.parametrize("entry", [
        {"day_of_week": 7, "start_time": "09:00", "end_time": "10:00"},
        {"day_of_week": True, "start_time": "09:00", "end_time": "10:00"},
        {"day_of_week": "1", "start_time": "09:00", "end_time": "10:00"},
        {"day_of_week": 1, "start_time": "10:00", "end_time": "10:00"},
        {"day_of_week": 1, "start_time": "late", "end_time": "10:00"},
        {"day_of_week": 1, "start_time": "09:00", "end_time": "10:00", "timezone": "Nowhere/City"},
    ])
    def test_set_windows_rejects_invalid(self, session, entry):
        user = add_user(session, role="investor")
        add_window(session, user.id, 4, "08:00", "09:00")
        session.commit()

        with pytest.raises(ValueError):
            set_windows(session, user.id, [entry])
        assert [w.day_of_week for w in windows_for(session, user.id)] == [4]

    def test_set_windows_rejects_duplicate_day(self, session):
        user = add_user(session, role="investor")
        with pytest.raises(ValueError, match="Duplicate"):
            set_windows(session, user.id, [
                {"day_of_week": 1, "start_time": "09:00", "end_time": "10:00"},
                {"day_of_week": 1, "start_time": "11:00", "end_time": "12:00"},
            ])

    def test_windows_for_skips_malformed_rows(self, session):
        user = add_user(session, role="investor")
        add_window(session, user.id, 1, "whenever", "10:00")
        add_window(session, user.id, 2, "09:00", "10:00")
        session.commit()
        assert windows_for(session, user.id) == [Window(2, 540, 600, "UTC")]
