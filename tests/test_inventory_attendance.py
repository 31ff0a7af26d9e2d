from __future__ import annotations

import pytest

from labtrack.attendance import attendance_stats
from labtrack.inventory import CRITICAL, LOW, OK, OVERSTOCK, classify_stock


@pytest.mark.parametrize(
    "remaining, threshold, expected",
    [
        (1, 10, CRITICAL),
        (0, 10, CRITICAL),
        (3, 10, LOW),
        (5, 10, OK),
        (20, 10, OVERSTOCK),
        (5, 0, OK),
        (5, None, OK),
    ],
)
def test_classify_stock(remaining, threshold, expected):
    assert classify_stock(remaining, threshold) == expected


def test_attendance_stats_counts_each_status():
    records = [{"status": status} for status in ("present", "present", "late", "absent", "excused")]
    stats = attendance_stats(records)
    assert stats["total_days"] == 5
    assert stats["present_days"] == 2
    assert stats["late_days"] == 1
    assert stats["absent_days"] == 1
    assert stats["excused_days"] == 1
    assert stats["attendance_rate"] == pytest.approx(40.0)


def test_attendance_stats_empty():
    assert attendance_stats([])["attendance_rate"] == 0.0
