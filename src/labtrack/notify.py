"""Toast-style notifications surfaced to whoever drives an operation."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT = "default"
DESTRUCTIVE = "destructive"


@dataclass(frozen=True)
class Toast:
    title: str
    description: str
    variant: str = DEFAULT

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


class Notifier:
    """Collects toasts in order; surfaces drain them into their responses."""

    def __init__(self) -> None:
        self._toasts: List[Toast] = []

    def toast(self, title: str, description: str, variant: str = DEFAULT) -> Toast:
        item = Toast(title=title, description=description, variant=variant)
        if variant == DESTRUCTIVE:
            logger.warning("%s: %s", title, description)
        else:
            logger.info("%s: %s", title, description)
        self._toasts.append(item)
        return item

    def success(self, description: str, title: str = "Success") -> Toast:
        return self.toast(title, description)

    def error(self, description: str, title: str = "Error") -> Toast:
        return self.toast(title, description, DESTRUCTIVE)

    @property
    def toasts(self) -> List[Toast]:
        return list(self._toasts)

    def last(self) -> Optional[Toast]:
        return self._toasts[-1] if self._toasts else None

    def drain(self) -> List[Toast]:
        drained, self._toasts = self._toasts, []
        return drained
