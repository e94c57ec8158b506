from __future__ import annotations

import asyncio
import logging
from typing import Optional

from funnel_engine.clients.http import ServiceError
from funnel_engine.config import EngineLimits
from funnel_engine.enums import ChangeKindEnum, ErrorKindEnum, SignalKindEnum
from funnel_engine.errors import (
    AlreadyAssignedError,
    FunnelEngineError,
    LimitReachedError,
    LockedError,
    NotAssignedError,
    NotFoundError,
    PersistenceFailureError,
)
from funnel_engine.schemas import Resource
from funnel_engine.services.catalog import CatalogStore
from funnel_engine.services.feedback import FeedbackSignalEmitter
from funnel_engine.services.funnel_board import FunnelBoard
from funnel_engine.services.optimistic import run_optimistic
from funnel_engine.services.readiness import FunnelReadinessGate
from funnel_engine.services.validator import assignment_block_reason, category_capacity, full_category

logger = logging.getLogger(__name__)


class AssignmentCoordinator:
    """Adds and removes catalog resources to and from funnels.

    Each call re-validates, marks the (funnel, resource) pair busy, changes the
    funnel optimistically and then writes the funnel's full assignment set.
    Writes for one funnel go out one at a time so a slow response can never
    overwrite a newer set; a failed write removes or restores only its own
    resource id. A resource being removed keeps its capacity slot and its
    catalog link until the write is confirmed.
    """

    def __init__(
        self,
        *,
        catalog: CatalogStore,
        board: FunnelBoard,
        gate: FunnelReadinessGate,
        persistence,
        limits: EngineLimits,
        signals: FeedbackSignalEmitter,
    ) -> None:
        self._catalog = catalog
        self._board = board
        self._gate = gate
        self._persistence = persistence
        self._limits = limits
        self._signals = signals
        self._busy: set[tuple[str, str]] = set()
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._queued: dict[str, int] = {}
        gate.track_assignment_writes(self.has_pending_writes)

    # -- affordances -------------------------------------------------------

    def is_busy(self, funnel_id: str, resource_id: str) -> bool:
        return (funnel_id, resource_id) in self._busy

    def busy_resource_ids(self, funnel_id: str) -> frozenset[str]:
        return frozenset(resource_id for busy_funnel_id, resource_id in self._busy if busy_funnel_id == funnel_id)

    def has_pending_writes(self, funnel_id: str) -> bool:
        return funnel_id in self._queued

    def _capacity_args(self, funnel_id: str, resource_id: str) -> dict:
        return {
            "occupancy": self._catalog.funnel_occupancy(funnel_id),
            "categories": self._catalog.possible_categories(resource_id),
        }

    def block_reason(self, funnel_id: str, resource_id: str) -> Optional[ErrorKindEnum]:
        view = self._board.view(funnel_id)
        resource = self._catalog.get(resource_id)
        if self._gate.is_locked(funnel_id):
            return ErrorKindEnum.LOCKED
        return assignment_block_reason(view, resource, self._limits, **self._capacity_args(funnel_id, resource_id))

    def can_assign(self, funnel_id: str, resource_id: str) -> bool:
        return self.block_reason(funnel_id, resource_id) is None

    # -- mutations ---------------------------------------------------------

    def _reject(
        self,
        kind: SignalKindEnum,
        resource: Resource,
        funnel_id: str,
        error: FunnelEngineError,
    ) -> FunnelEngineError:
        self._signals.emit(kind, resource, funnel_id=funnel_id, error=error)
        return error

    def _reserve_write(self, funnel_id: str, kind: SignalKindEnum, resource: Resource) -> None:
        queued = self._queued.get(funnel_id, 0)
        if queued >= self._limits.assignment_queue_limit:
            raise self._reject(
                kind,
                resource,
                funnel_id,
                LimitReachedError(
                    entity_name=resource.name,
                    resource_id=resource.id,
                    funnel_id=funnel_id,
                    message="Assignment queue is full. Please try again later.",
                ),
            )
        self._queued[funnel_id] = queued + 1

    def _release_write(self, funnel_id: str) -> None:
        remaining = self._queued.get(funnel_id, 1) - 1
        if remaining > 0:
            self._queued[funnel_id] = remaining
            return
        self._queued.pop(funnel_id, None)
        self._write_locks.pop(funnel_id, None)

    async def _write_assignments(self, funnel_id: str) -> list[str]:
        lock = self._write_locks.setdefault(funnel_id, asyncio.Lock())
        async with lock:
            # Sent as it stands when this write reaches the front of the queue.
            resource_ids = list(self._board.get(funnel_id).resource_ids)
            return await self._persistence.set_funnel_assignments(funnel_id, resource_ids)

    def _check_confirmed(self, funnel_id: str, resource_id: str, confirmed_ids: list[str], *, present: bool) -> None:
        if (resource_id in confirmed_ids) != present:
            logger.warning(
                "assignments.server_set_differs",
                extra={"funnel_id": funnel_id, "resource_id": resource_id, "confirmed_ids": confirmed_ids},
            )

    async def assign(self, funnel_id: str, resource_id: str) -> bool:
        """Assign a resource; returns False when the same pair is already in flight."""
        view = self._board.view(funnel_id)
        resource = self._catalog.get(resource_id)
        key = (funnel_id, resource_id)
        if key in self._busy:
            logger.debug("assignments.duplicate_submit_ignored", extra={"funnel_id": funnel_id, "resource_id": resource_id})
            return False

        if self._gate.is_locked(funnel_id):
            raise self._reject(
                SignalKindEnum.assigned,
                resource,
                funnel_id,
                LockedError(entity_name=view.name, resource_id=resource_id, funnel_id=funnel_id),
            )
        capacity_args = self._capacity_args(funnel_id, resource_id)
        reason = assignment_block_reason(view, resource, self._limits, **capacity_args)
        if reason == ErrorKindEnum.ALREADY_ASSIGNED:
            raise self._reject(
                SignalKindEnum.assigned,
                resource,
                funnel_id,
                AlreadyAssignedError(entity_name=resource.name, resource_id=resource_id, funnel_id=funnel_id),
            )
        if reason == ErrorKindEnum.LIMIT_REACHED:
            category = full_category(view, resource, self._limits, **capacity_args) or resource.value_category
            capacity = category_capacity(category, self._limits)
            raise self._reject(
                SignalKindEnum.assigned,
                resource,
                funnel_id,
                LimitReachedError(
                    entity_name=resource.name,
                    resource_id=resource_id,
                    funnel_id=funnel_id,
                    message=(
                        f"Cannot add {category.value.lower()} product: limit reached "
                        f"(max {capacity} {category.value.lower()} products per funnel)"
                    ),
                ),
            )

        self._reserve_write(funnel_id, SignalKindEnum.assigned, resource)
        self._busy.add(key)

        def revert() -> None:
            if funnel_id in self._board:
                self._board.remove_resource(funnel_id, resource_id, kind=ChangeKindEnum.reverted)

        try:
            await run_optimistic(
                apply=lambda: self._board.add_resource(funnel_id, resource_id, kind=ChangeKindEnum.applied),
                commit=lambda: self._write_assignments(funnel_id),
                confirm=lambda confirmed_ids: self._check_confirmed(
                    funnel_id, resource_id, confirmed_ids, present=True
                ),
                revert=revert,
            )
        except ServiceError as exc:
            logger.warning(
                "assignments.assign_failed",
                extra={"funnel_id": funnel_id, "resource_id": resource_id, "error": str(exc)},
            )
            raise self._reject(
                SignalKindEnum.assigned,
                resource,
                funnel_id,
                PersistenceFailureError(
                    entity_name=resource.name,
                    resource_id=resource_id,
                    funnel_id=funnel_id,
                    message=str(exc),
                ),
            ) from exc
        finally:
            self._busy.discard(key)
            self._release_write(funnel_id)

        logger.info("assignments.assigned", extra={"funnel_id": funnel_id, "resource_id": resource_id})
        self._signals.emit(SignalKindEnum.assigned, resource, funnel_id=funnel_id)
        return True

    async def unassign(self, funnel_id: str, resource_id: str) -> bool:
        """Remove a resource; returns False when the same pair is already in flight."""
        view = self._board.view(funnel_id)
        resource = self._catalog.find(resource_id)
        if resource is None:
            raise NotFoundError(entity_name=resource_id, resource_id=resource_id, funnel_id=funnel_id)
        key = (funnel_id, resource_id)
        if key in self._busy:
            logger.debug("assignments.duplicate_submit_ignored", extra={"funnel_id": funnel_id, "resource_id": resource_id})
            return False

        if self._gate.is_locked(funnel_id):
            raise self._reject(
                SignalKindEnum.unassigned,
                resource,
                funnel_id,
                LockedError(entity_name=view.name, resource_id=resource_id, funnel_id=funnel_id),
            )
        if not view.has_resource(resource_id):
            raise self._reject(
                SignalKindEnum.unassigned,
                resource,
                funnel_id,
                NotAssignedError(entity_name=resource.name, resource_id=resource_id, funnel_id=funnel_id),
            )

        self._reserve_write(funnel_id, SignalKindEnum.unassigned, resource)
        self._busy.add(key)

        def confirm(confirmed_ids: list[str]) -> None:
            self._catalog.unlink(resource_id, funnel_id)
            self._check_confirmed(funnel_id, resource_id, confirmed_ids, present=False)

        def revert() -> None:
            if funnel_id in self._board and resource_id in self._catalog:
                self._board.add_resource(funnel_id, resource_id, kind=ChangeKindEnum.reverted)
            else:
                self._catalog.unlink(resource_id, funnel_id)

        try:
            await run_optimistic(
                apply=lambda: self._board.remove_resource(
                    funnel_id, resource_id, kind=ChangeKindEnum.applied, unlink=False
                ),
                commit=lambda: self._write_assignments(funnel_id),
                confirm=confirm,
                revert=revert,
            )
        except ServiceError as exc:
            logger.warning(
                "assignments.unassign_failed",
                extra={"funnel_id": funnel_id, "resource_id": resource_id, "error": str(exc)},
            )
            raise self._reject(
                SignalKindEnum.unassigned,
                resource,
                funnel_id,
                PersistenceFailureError(
                    entity_name=resource.name,
                    resource_id=resource_id,
                    funnel_id=funnel_id,
                    message=str(exc),
                ),
            ) from exc
        finally:
            self._busy.discard(key)
            self._release_write(funnel_id)

        logger.info("assignments.unassigned", extra={"funnel_id": funnel_id, "resource_id": resource_id})
        self._signals.emit(SignalKindEnum.unassigned, resource, funnel_id=funnel_id)
        return True
