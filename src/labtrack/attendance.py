"""Attendance statistics for team members."""
from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping

ATTENDANCE_STATUSES = ("present", "absent", "late", "excused")


def attendance_stats(records: Iterable[Mapping[str, Any]]) -> Dict[str, float]:
    statuses = [record.get("status") for record in records]
    total = len(statuses)
    present = statuses.count("present")
    return {
        "total_days": total,
        "present_days": present,
        "absent_days": statuses.count("absent"),
        "late_days": statuses.count("late"),
        "excused_days": statuses.count("excused"),
        "attendance_rate": (present / total) * 100 if total else 0.0,
    }
