from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from funnel_engine.enums import ChangeKindEnum

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKindEnum
    entity_id: str


ChangeCallback = Callable[[ChangeEvent], None]


class ChangeNotifier:
    def __init__(self) -> None:
        self._subscribers: list[ChangeCallback] = []

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def notify(self, kind: ChangeKindEnum, entity_id: str) -> None:
        event = ChangeEvent(kind=kind, entity_id=entity_id)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                # A broken view must not abort a store mutation halfway through.
                logger.exception(
                    "observers.callback_failed",
                    extra={"change_kind": kind.value, "entity_id": entity_id},
                )
