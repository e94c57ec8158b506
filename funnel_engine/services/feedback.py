"""Expiring advisories describing the outcome of catalog and assignment mutations.

Presentation-facing only: the stores, the coordinator and the readiness gate
write here but never read from it.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from funnel_engine.enums import ErrorKindEnum, SignalKindEnum
from funnel_engine.errors import FunnelEngineError
from funnel_engine.schemas import Resource

logger = logging.getLogger(__name__)

_SUCCESS_MESSAGES: dict[SignalKindEnum, str] = {
    SignalKindEnum.created: '"{name}" was added to your catalog.',
    SignalKindEnum.updated: '"{name}" was updated.',
    SignalKindEnum.deleted: '"{name}" was deleted.',
    SignalKindEnum.assigned: '"{name}" was added to the funnel.',
    SignalKindEnum.unassigned: '"{name}" was removed from the funnel.',
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class FeedbackSignal:
    kind: SignalKindEnum
    succeeded: bool
    resource: Resource
    message: str
    created_at: datetime
    expires_at: datetime
    funnel_id: Optional[str] = None
    error_kind: Optional[ErrorKindEnum] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


SignalCallback = Callable[[FeedbackSignal], None]


class FeedbackSignalEmitter:
    def __init__(
        self,
        *,
        ttl_seconds: float = 3.0,
        max_signals: int = 50,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._queue: deque[FeedbackSignal] = deque(maxlen=max_signals or None)
        self._subscribers: list[SignalCallback] = []

    def emit(
        self,
        kind: SignalKindEnum,
        resource: Resource,
        *,
        funnel_id: Optional[str] = None,
        error: Optional[FunnelEngineError] = None,
    ) -> FeedbackSignal:
        now = self._clock()
        if error is not None:
            message = error.user_message
        else:
            message = _SUCCESS_MESSAGES[kind].format(name=resource.name)
        signal = FeedbackSignal(
            kind=kind,
            succeeded=error is None,
            resource=resource,
            message=message,
            created_at=now,
            expires_at=now + self._ttl,
            funnel_id=funnel_id,
            error_kind=error.kind if error is not None else None,
        )
        self._queue.append(signal)
        for callback in list(self._subscribers):
            try:
                callback(signal)
            except Exception:
                logger.exception("feedback.callback_failed", extra={"signal_kind": kind.value})
        return signal

    def _prune(self) -> None:
        # Every signal shares one ttl, so expiry order follows queue order.
        now = self._clock()
        while self._queue and self._queue[0].is_expired(now):
            self._queue.popleft()

    def active(self) -> list[FeedbackSignal]:
        self._prune()
        return list(self._queue)

    def drain(self) -> list[FeedbackSignal]:
        signals = self.active()
        self._queue.clear()
        return signals

    def subscribe(self, callback: SignalCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def __len__(self) -> int:
        return len(self.active())
