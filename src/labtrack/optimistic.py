"""Optimistic updates as explicit intents.

An intent applies a tentative local change, tries to commit it remotely and
ends either ``committed`` or ``rolled_back`` (the inverse change applied).
A key already in flight makes any further trigger for it a no-op.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional, Set

from .notify import Notifier

logger = logging.getLogger(__name__)

NEW = "new"
TENTATIVE = "tentative"
COMMITTED = "committed"
ROLLED_BACK = "rolled_back"


class IntentStateError(RuntimeError):
    pass


class Intent:
    def __init__(self, key: str, apply: Callable[[], None], revert: Callable[[], None]) -> None:
        self.key = key
        self.state = NEW
        self.result: Any = None
        self.error: Optional[BaseException] = None
        self._apply = apply
        self._revert = revert

    def _require(self, expected: str) -> None:
        if self.state != expected:
            raise IntentStateError(f"Intent {self.key} is {self.state}, expected {expected}")

    def apply(self) -> None:
        self._require(NEW)
        self._apply()
        self.state = TENTATIVE

    def commit(self, result: Any = None) -> None:
        self._require(TENTATIVE)
        self.result = result
        self.state = COMMITTED

    def roll_back(self, error: Optional[BaseException] = None) -> None:
        self._require(TENTATIVE)
        self._revert()
        self.error = error
        self.state = ROLLED_BACK

    @property
    def succeeded(self) -> bool:
        return self.state == COMMITTED

    def __repr__(self) -> str:
        return f"Intent(key={self.key!r}, state={self.state})"


def _error_message(exc: BaseException) -> str:
    return getattr(exc, "message", None) or str(exc) or "Unknown error"


class InFlightKeys:
    """Keys of operations still outstanding, shareable between runners.

    Every board built for a request gets its own runner; handing them one
    ``InFlightKeys`` makes a trigger from a second request a no-op too.
    """

    def __init__(self) -> None:
        self._keys: Set[str] = set()
        self._lock = threading.Lock()

    def claim(self, key: str) -> bool:
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._keys.discard(key)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._keys


class OptimisticRunner:
    """Drive intents to completion and report the outcome as toasts.

    ``call`` wraps each remote commit; pass the store's timeout race so a
    slow commit fails like any other. ``in_flight`` defaults to a set private
    to this runner.
    """

    def __init__(
        self,
        notifier: Notifier,
        call: Optional[Callable[..., Any]] = None,
        in_flight: Optional[InFlightKeys] = None,
    ) -> None:
        self.notifier = notifier
        self._call = call or (lambda fn: fn())
        self.in_flight = in_flight if in_flight is not None else InFlightKeys()

    def busy(self, key: str) -> bool:
        return key in self.in_flight

    def run(
        self,
        key: str,
        apply: Callable[[], None],
        commit: Callable[[], Any],
        revert: Callable[[], None],
        success: Optional[str] = None,
        failure: str = "Operation failed",
    ) -> Optional[Intent]:
        if not self.in_flight.claim(key):
            logger.info("operation already in progress for %s", key)
            return None

        intent = Intent(key, apply, revert)
        try:
            intent.apply()
            try:
                result = self._call(commit)
            except Exception as exc:
                logger.warning("commit for %s failed, rolling back: %s", key, exc)
                intent.roll_back(exc)
                self.notifier.error(f"{failure}: {_error_message(exc)}")
            else:
                intent.commit(result)
                if success:
                    self.notifier.success(success)
        finally:
            self.in_flight.release(key)
        return intent
