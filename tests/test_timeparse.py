from __future__ import annotations

from datetime import date

import pytest

from taskpilot.core.timeparse import display_time, parse_time, resolve_date


@pytest.mark.parametrize(
    "text,expected",
    [
        ("9am", "09:00"),
        ("9 AM", "09:00"),
        ("9:00 AM", "09:00"),
        ("at 2:30 pm please", "14:30"),
        ("12am", "00:00"),
        ("12 p.m.", "12:00"),
        ("14:30", "14:30"),
        ("noon", "12:00"),
        ("midnight", "00:00"),
    ],
)
def test_parse_explicit_times(text, expected):
    found = parse_time(text)
    assert found is not None
    assert found.value == expected
    assert found.explicit is True


def test_day_parts_are_not_explicit():
    found = parse_time("tomorrow morning")
    assert found is not None
    assert found.value == "09:00"
    assert found.explicit is False


@pytest.mark.parametrize("text", ["the dentist tomorrow", "13pm", "whenever", "25:00"])
def test_parse_time_rejects_non_times(text):
    assert parse_time(text) is None


def test_resolve_relative_dates():
    today = date(2026, 3, 2)  # Monday
    assert resolve_date("tomorrow", today=today) == date(2026, 3, 3)
    assert resolve_date("the day after tomorrow", today=today) == date(2026, 3, 4)
    assert resolve_date("today", today=today) == today
    assert resolve_date("on friday", today=today) == date(2026, 3, 6)
    assert resolve_date("monday", today=today) == date(2026, 3, 9)
    assert resolve_date("2026-12-24", today=today) == date(2026, 12, 24)
    assert resolve_date("someday", today=today) is None
    assert resolve_date(None, today=today) is None


def test_display_time():
    assert display_time("09:00") == "9:00 AM"
    assert display_time("14:30") == "2:30 PM"
    assert display_time("00:15") == "12:15 AM"
