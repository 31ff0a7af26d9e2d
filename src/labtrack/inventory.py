"""Stock level classification for consumables."""
from __future__ import annotations

from typing import Optional

OK = "ok"
LOW = "low"
CRITICAL = "critical"
OVERSTOCK = "overstock"
STOCK_STATUSES = (OK, LOW, CRITICAL, OVERSTOCK)

CRITICAL_RATIO = 0.1
LOW_RATIO = 0.3
OVERSTOCK_RATIO = 2.0


def classify_stock(remaining: Optional[float], alert_threshold: Optional[float]) -> str:
    """Status of an item from its remaining quantity relative to its alert threshold."""
    if not alert_threshold or alert_threshold <= 0:
        return OK
    ratio = (remaining or 0) / alert_threshold
    if ratio <= CRITICAL_RATIO:
        return CRITICAL
    if ratio <= LOW_RATIO:
        return LOW
    if ratio >= OVERSTOCK_RATIO:
        return OVERSTOCK
    return OK
