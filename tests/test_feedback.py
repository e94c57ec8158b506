from __future__ import annotations

from datetime import datetime, timedelta, timezone

from funnel_engine.enums import ErrorKindEnum, OriginKindEnum, SignalKindEnum
from funnel_engine.errors import StillAssignedError
from funnel_engine.schemas import Resource
from funnel_engine.services.feedback import FeedbackSignalEmitter


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def _resource() -> Resource:
    return Resource(id="r1", name="Discord Access", origin_kind=OriginKindEnum.OWNED)


def test_signals_expire_after_ttl():
    clock = _Clock()
    emitter = FeedbackSignalEmitter(ttl_seconds=3, clock=clock)

    emitter.emit(SignalKindEnum.created, _resource())
    clock.advance(2)
    emitter.emit(SignalKindEnum.updated, _resource())

    assert [signal.kind for signal in emitter.active()] == [SignalKindEnum.created, SignalKindEnum.updated]

    clock.advance(1)
    assert [signal.kind for signal in emitter.active()] == [SignalKindEnum.updated]

    clock.advance(2)
    assert emitter.active() == []
    assert len(emitter) == 0


def test_failure_signal_carries_error_kind_and_message():
    emitter = FeedbackSignalEmitter(clock=_Clock())
    error = StillAssignedError(entity_name="Discord Access", resource_id="r1")

    signal = emitter.emit(SignalKindEnum.deleted, _resource(), error=error)

    assert signal.succeeded is False
    assert signal.error_kind == ErrorKindEnum.STILL_ASSIGNED
    assert "Discord Access" in signal.message
    assert signal.expires_at - signal.created_at == timedelta(seconds=3)


def test_success_signal_message_names_the_resource():
    emitter = FeedbackSignalEmitter(clock=_Clock())

    signal = emitter.emit(SignalKindEnum.assigned, _resource(), funnel_id="f1")

    assert signal.succeeded is True
    assert signal.funnel_id == "f1"
    assert signal.message == '"Discord Access" was added to the funnel.'


def test_queue_drops_oldest_signal_when_full():
    emitter = FeedbackSignalEmitter(max_signals=2, clock=_Clock())

    emitter.emit(SignalKindEnum.created, _resource())
    emitter.emit(SignalKindEnum.updated, _resource())
    emitter.emit(SignalKindEnum.deleted, _resource())

    assert [signal.kind for signal in emitter.active()] == [SignalKindEnum.updated, SignalKindEnum.deleted]


def test_subscriber_failure_does_not_block_emit():
    emitter = FeedbackSignalEmitter(clock=_Clock())
    received = []

    def broken(_signal) -> None:
        raise RuntimeError("boom")

    emitter.subscribe(broken)
    unsubscribe = emitter.subscribe(received.append)

    emitter.emit(SignalKindEnum.created, _resource())
    unsubscribe()
    emitter.emit(SignalKindEnum.updated, _resource())

    assert [signal.kind for signal in received] == [SignalKindEnum.created]
    assert len(emitter.drain()) == 2
    assert emitter.active() == []
