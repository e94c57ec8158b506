from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Iterable
from typing import Optional
from uuid import uuid4

from funnel_engine.clients.http import ServiceError
from funnel_engine.config import EngineLimits
from funnel_engine.enums import ChangeKindEnum, SignalKindEnum, ValueCategoryEnum
from funnel_engine.errors import (
    FunnelEngineError,
    LimitReachedError,
    NameConflictError,
    NotFoundError,
    PersistenceFailureError,
    StillAssignedError,
)
from funnel_engine.schemas import Resource, ResourceDraft, ResourcePatch
from funnel_engine.services.feedback import FeedbackSignalEmitter
from funnel_engine.services.observers import ChangeCallback, ChangeNotifier
from funnel_engine.services.optimistic import run_optimistic
from funnel_engine.services.validator import category_capacity, normalize_resource_name

logger = logging.getLogger(__name__)

LOCAL_ID_PREFIX = "local-"


def is_local_id(resource_id: str) -> bool:
    return resource_id.startswith(LOCAL_ID_PREFIX)


class CatalogStore:
    """Authoritative in-memory catalog of a merchant's resources.

    Mutations are optimistic: the local collection changes before the
    persistence call is awaited and is confirmed or reverted when the call
    completes. The store also keeps the resource -> funnels index used to gate
    deletion; the assignment coordinator maintains it through ``link`` and
    ``unlink``.
    """

    def __init__(
        self,
        *,
        persistence,
        limits: EngineLimits,
        signals: Optional[FeedbackSignalEmitter] = None,
        resources: Iterable[Resource] = (),
    ) -> None:
        self._persistence = persistence
        self._limits = limits
        self._signals = signals or FeedbackSignalEmitter(
            ttl_seconds=limits.signal_ttl_seconds, max_signals=limits.max_signals
        )
        self._resources: dict[str, Resource] = {resource.id: resource for resource in resources}
        self._confirmed: dict[str, Resource] = dict(self._resources)
        self._pending_updates: dict[str, list[tuple[int, Resource]]] = {}
        self._update_tokens = itertools.count(1)
        self._assignments: dict[str, set[str]] = {}
        self._changes = ChangeNotifier()

    # -- reads -------------------------------------------------------------

    def list(self, category: Optional[ValueCategoryEnum] = None) -> list[Resource]:
        resources = list(self._resources.values())
        if category is None:
            return resources
        return [resource for resource in resources if resource.value_category == category]

    def __len__(self) -> int:
        return len(self._resources)

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._resources

    def find(self, resource_id: str) -> Optional[Resource]:
        return self._resources.get(resource_id)

    def get(self, resource_id: str) -> Resource:
        resource = self._resources.get(resource_id)
        if resource is None:
            raise NotFoundError(entity_name=resource_id, resource_id=resource_id)
        if is_local_id(resource_id):
            raise NotFoundError(
                entity_name=resource.name,
                resource_id=resource_id,
                message=f'"{resource.name}" is still being created.',
            )
        return resource

    def is_name_available(self, name: str, excluding_id: Optional[str] = None) -> bool:
        normalized = normalize_resource_name(name)
        if not normalized:
            return True
        return not any(
            resource.id != excluding_id and normalize_resource_name(resource.name) == normalized
            for resource in self._resources.values()
        )

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        return self._changes.subscribe(callback)

    # -- assignment index --------------------------------------------------

    def assigned_funnel_ids(self, resource_id: str) -> frozenset[str]:
        return frozenset(self._assignments.get(resource_id, ()))

    def is_assigned(self, resource_id: str) -> bool:
        return bool(self._assignments.get(resource_id))

    def link(self, resource_id: str, funnel_id: str) -> None:
        self._assignments.setdefault(resource_id, set()).add(funnel_id)

    def unlink(self, resource_id: str, funnel_id: str) -> None:
        funnel_ids = self._assignments.get(resource_id)
        if not funnel_ids:
            return
        funnel_ids.discard(funnel_id)
        if not funnel_ids:
            del self._assignments[resource_id]

    def possible_categories(self, resource_id: str) -> frozenset[ValueCategoryEnum]:
        """Categories the resource holds now, was last confirmed in, or has in flight."""
        categories: set[ValueCategoryEnum] = set()
        for resource in (self._resources.get(resource_id), self._confirmed.get(resource_id)):
            if resource is not None:
                categories.add(resource.value_category)
        for _token, pending in self._pending_updates.get(resource_id, ()):
            categories.add(pending.value_category)
        return frozenset(categories)

    def funnel_occupancy(self, funnel_id: str, excluding_id: Optional[str] = None) -> dict[ValueCategoryEnum, int]:
        """Count the capacity slots a funnel holds per category.

        Resources with a removal still in flight stay linked, and a resource
        with a category change in flight occupies a slot in every category it
        may settle in, so a failed write can always be rolled back.
        """
        counts = {category: 0 for category in ValueCategoryEnum}
        for resource_id, funnel_ids in self._assignments.items():
            if resource_id == excluding_id or funnel_id not in funnel_ids:
                continue
            for category in self.possible_categories(resource_id):
                counts[category] += 1
        return counts

    # -- mutations ---------------------------------------------------------

    def _reject(self, kind: SignalKindEnum, resource: Resource, error: FunnelEngineError) -> FunnelEngineError:
        self._signals.emit(kind, resource, error=error)
        return error

    def _replace_key(self, old_id: str, resource: Resource) -> None:
        if old_id not in self._resources:
            self._resources[resource.id] = resource
            return
        self._resources = {
            (resource.id if key == old_id else key): (resource if key == old_id else value)
            for key, value in self._resources.items()
        }

    async def create(self, draft: ResourceDraft) -> Resource:
        local_id = f"{LOCAL_ID_PREFIX}{uuid4().hex}"
        provisional = Resource.model_validate({**draft.model_dump(), "id": local_id})
        if not self.is_name_available(draft.name):
            raise self._reject(
                SignalKindEnum.created,
                provisional,
                NameConflictError(entity_name=draft.name),
            )
        limit = self._limits.catalog_resource_limit
        if len(self._resources) >= limit:
            raise self._reject(
                SignalKindEnum.created,
                provisional,
                LimitReachedError(
                    entity_name=draft.name,
                    message=f"Cannot create resource: limit reached (max {limit} resources per catalog)",
                ),
            )

        def apply() -> None:
            self._resources[local_id] = provisional
            self._changes.notify(ChangeKindEnum.applied, local_id)

        def revert() -> None:
            self._resources.pop(local_id, None)
            self._changes.notify(ChangeKindEnum.reverted, local_id)

        def confirm(created: Resource) -> None:
            self._replace_key(local_id, created)
            self._confirmed[created.id] = created
            self._changes.notify(ChangeKindEnum.confirmed, created.id)

        try:
            created = await run_optimistic(
                apply=apply,
                commit=lambda: self._persistence.create_resource(draft),
                confirm=confirm,
                revert=revert,
            )
        except ServiceError as exc:
            logger.warning("catalog.create_failed", extra={"resource_name": draft.name, "error": str(exc)})
            raise self._reject(
                SignalKindEnum.created,
                provisional,
                PersistenceFailureError(entity_name=draft.name, message=str(exc)),
            ) from exc

        logger.info("catalog.resource_created", extra={"resource_id": created.id, "local_id": local_id})
        self._signals.emit(SignalKindEnum.created, created)
        return created

    def _drop_pending_update(self, resource_id: str, token: int) -> None:
        pending = self._pending_updates.get(resource_id)
        if not pending:
            return
        remaining = [entry for entry in pending if entry[0] != token]
        if remaining:
            self._pending_updates[resource_id] = remaining
        else:
            del self._pending_updates[resource_id]

    async def update(self, resource_id: str, patch: ResourcePatch) -> Resource:
        current = self.get(resource_id)
        candidate = patch.apply_to(current)
        if not self.is_name_available(candidate.name, excluding_id=resource_id):
            raise self._reject(
                SignalKindEnum.updated,
                current,
                NameConflictError(entity_name=candidate.name, resource_id=resource_id),
            )
        if candidate.value_category != current.value_category:
            capacity = category_capacity(candidate.value_category, self._limits)
            for funnel_id in sorted(self.assigned_funnel_ids(resource_id)):
                occupancy = self.funnel_occupancy(funnel_id, excluding_id=resource_id)
                if occupancy[candidate.value_category] >= capacity:
                    raise self._reject(
                        SignalKindEnum.updated,
                        current,
                        LimitReachedError(
                            entity_name=current.name,
                            resource_id=resource_id,
                            funnel_id=funnel_id,
                            message=(
                                f'Cannot change "{current.name}" to {candidate.value_category.value}: '
                                f"funnel {funnel_id} is at capacity"
                            ),
                        ),
                    )

        token = next(self._update_tokens)

        def apply() -> None:
            self._pending_updates.setdefault(resource_id, []).append((token, candidate))
            self._resources[resource_id] = candidate
            self._changes.notify(ChangeKindEnum.applied, resource_id)

        def revert() -> None:
            self._drop_pending_update(resource_id, token)
            if resource_id not in self._resources:
                return
            pending = self._pending_updates.get(resource_id)
            # Fall back to the newest edit still in flight, else to server truth.
            fallback = pending[-1][1] if pending else self._confirmed.get(resource_id, current)
            self._resources[resource_id] = fallback
            self._changes.notify(ChangeKindEnum.reverted, resource_id)

        def confirm(updated: Resource) -> None:
            self._drop_pending_update(resource_id, token)
            self._confirmed[resource_id] = updated
            if resource_id in self._resources:
                self._resources[resource_id] = updated
                self._changes.notify(ChangeKindEnum.confirmed, resource_id)

        try:
            updated = await run_optimistic(
                apply=apply,
                commit=lambda: self._persistence.update_resource(resource_id, patch),
                confirm=confirm,
                revert=revert,
            )
        except ServiceError as exc:
            logger.warning("catalog.update_failed", extra={"resource_id": resource_id, "error": str(exc)})
            raise self._reject(
                SignalKindEnum.updated,
                current,
                PersistenceFailureError(entity_name=current.name, resource_id=resource_id, message=str(exc)),
            ) from exc

        logger.info("catalog.resource_updated", extra={"resource_id": resource_id})
        self._signals.emit(SignalKindEnum.updated, updated)
        return updated

    def _check_deletable(self, resource_id: str) -> Resource:
        resource = self.get(resource_id)
        if self.is_assigned(resource_id):
            raise self._reject(
                SignalKindEnum.deleted,
                resource,
                StillAssignedError(entity_name=resource.name, resource_id=resource_id),
            )
        return resource

    async def delete(self, resource_id: str) -> None:
        current = self._check_deletable(resource_id)
        position = list(self._resources).index(resource_id)

        def apply() -> None:
            self._resources.pop(resource_id, None)
            self._changes.notify(ChangeKindEnum.applied, resource_id)

        def revert() -> None:
            items = list(self._resources.items())
            items.insert(min(position, len(items)), (resource_id, current))
            self._resources = dict(items)
            self._changes.notify(ChangeKindEnum.reverted, resource_id)

        def confirm(_result) -> None:
            self._confirmed.pop(resource_id, None)
            self._changes.notify(ChangeKindEnum.confirmed, resource_id)

        try:
            await run_optimistic(
                apply=apply,
                commit=lambda: self._persistence.delete_resource(resource_id),
                confirm=confirm,
                revert=revert,
            )
        except ServiceError as exc:
            logger.warning("catalog.delete_failed", extra={"resource_id": resource_id, "error": str(exc)})
            raise self._reject(
                SignalKindEnum.deleted,
                current,
                PersistenceFailureError(entity_name=current.name, resource_id=resource_id, message=str(exc)),
            ) from exc

        logger.info("catalog.resource_deleted", extra={"resource_id": resource_id})
        self._signals.emit(SignalKindEnum.deleted, current)

    async def delete_many(self, resource_ids: Iterable[str]) -> int:
        ordered = list(dict.fromkeys(resource_ids))
        for resource_id in ordered:
            self._check_deletable(resource_id)
        for resource_id in ordered:
            await self.delete(resource_id)
        return len(ordered)

    async def resync(self) -> set[str]:
        """Reload the catalog from persistence; returns ids that vanished."""
        try:
            resources = await self._persistence.list_resources()
        except ServiceError as exc:
            logger.warning("catalog.resync_failed", extra={"error": str(exc)})
            raise PersistenceFailureError(entity_name="catalog", message=str(exc)) from exc

        fresh = {resource.id: resource for resource in resources}
        known = set(self._resources) | set(self._assignments)
        vanished = {
            resource_id
            for resource_id in known
            if resource_id not in fresh and not is_local_id(resource_id)
        }
        self._resources = fresh
        self._confirmed = dict(fresh)
        for resource_id in list(self._assignments):
            if resource_id not in fresh:
                del self._assignments[resource_id]
        logger.info(
            "catalog.resynced",
            extra={"resource_count": len(fresh), "vanished_count": len(vanished)},
        )
        self._changes.notify(ChangeKindEnum.replaced, "*")
        return vanished
