"""Human-readable identifiers derived from sample and patient fields.

These are plain formatters and never consult the store; two samples of the
same type collected on the same day draw from only 900 suffixes, so
:func:`labtrack.services.register_sample` redraws on collision.
"""
from __future__ import annotations

import random
from datetime import date, datetime
from typing import Any, Optional, Union

from .progress import parse_datetime

DBS_PREFIX = "DBS"
PLAQUETTE_PREFIX = "PLQ"
SAMPLE_KINDS = ("bio", "dbs", "plaquette")

DateLike = Union[str, date, datetime, None]

_rng = random.Random()


def _as_date(value: DateLike) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = parse_datetime(value)
    return parsed.date() if parsed else None


def _suffix(rng: Optional[random.Random]) -> int:
    return (rng or _rng).randint(100, 999)


def _dated_id(prefix: str, collection_date: DateLike, rng: Optional[random.Random]) -> str:
    day = _as_date(collection_date)
    if not prefix or day is None:
        return ""
    return f"{prefix}-{day.strftime('%Y%m%d')}-{_suffix(rng)}"


def bio_sample_id(sample_type: Optional[str], collection_date: DateLike, rng: Optional[random.Random] = None) -> str:
    """``SER-20240315-482`` for a serum sample collected on 2024-03-15."""
    prefix = (sample_type or "").strip()[:3].upper()
    return _dated_id(prefix, collection_date, rng)


def dbs_sample_id(collection_date: DateLike, rng: Optional[random.Random] = None) -> str:
    return _dated_id(DBS_PREFIX, collection_date, rng)


def plaquette_id(collection_date: DateLike, rng: Optional[random.Random] = None) -> str:
    return _dated_id(PLAQUETTE_PREFIX, collection_date, rng)


def sample_id(kind: str, collection_date: DateLike, sample_type: Optional[str] = None,
              rng: Optional[random.Random] = None) -> str:
    if kind == "bio":
        return bio_sample_id(sample_type, collection_date, rng)
    if kind == "dbs":
        return dbs_sample_id(collection_date, rng)
    if kind == "plaquette":
        return plaquette_id(collection_date, rng)
    raise ValueError(f"Unknown sample kind '{kind}'")


def collection_year(collection_date: DateLike) -> Optional[int]:
    day = _as_date(collection_date)
    return day.year if day else None


def age_in_years(date_of_birth: DateLike, today: DateLike = None) -> Optional[int]:
    born = _as_date(date_of_birth)
    if born is None:
        return None
    current = _as_date(today) or date.today()
    years = current.year - born.year - ((current.month, current.day) < (born.month, born.day))
    return years if years >= 0 else None


def patient_record_number(
    name: Optional[str],
    age: Any,
    gender: Optional[str],
    ethnicity: Optional[str],
    site: Optional[str],
) -> str:
    """Name initials + age + gender + ethnicity + site, e.g. ``JO34MBAKI``.

    Any missing part yields an empty string, mirroring a form that has not been
    filled in far enough to produce a number.
    """
    if not (name and gender and ethnicity and site) or age in (None, ""):
        return ""
    return (
        f"{name[:2].upper()}{age}{gender[:1].upper()}"
        f"{ethnicity[:2].upper()}{site[:2].upper()}"
    )
