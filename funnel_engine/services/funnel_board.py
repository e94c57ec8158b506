from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any, Optional

from funnel_engine.config import EngineLimits
from funnel_engine.enums import ChangeKindEnum, ErrorKindEnum
from funnel_engine.errors import AlreadyAssignedError, LimitReachedError, NotFoundError
from funnel_engine.schemas import Funnel, FunnelView
from funnel_engine.services.catalog import CatalogStore
from funnel_engine.services.observers import ChangeCallback, ChangeNotifier
from funnel_engine.services.validator import assignment_block_reason

logger = logging.getLogger(__name__)


class FunnelBoard:
    """Funnels known to the engine.

    Funnels are created and destroyed by an outside collaborator and handed to
    ``register``; the engine only changes their assignment set and reads or
    records their generation and deployment flags. Assigned resources are
    stored as ids and materialized from the catalog on read.
    """

    def __init__(self, *, catalog: CatalogStore, limits: EngineLimits) -> None:
        self._catalog = catalog
        self._limits = limits
        self._funnels: dict[str, Funnel] = {}
        self._changes = ChangeNotifier()

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        return self._changes.subscribe(callback)

    def __contains__(self, funnel_id: object) -> bool:
        return funnel_id in self._funnels

    def list(self) -> list[Funnel]:
        return list(self._funnels.values())

    def get(self, funnel_id: str) -> Funnel:
        funnel = self._funnels.get(funnel_id)
        if funnel is None:
            raise NotFoundError(entity_name=funnel_id, funnel_id=funnel_id)
        return funnel

    def view(self, funnel_id: str) -> FunnelView:
        funnel = self.get(funnel_id)
        resources = []
        for resource_id in funnel.resource_ids:
            resource = self._catalog.find(resource_id)
            if resource is not None:
                resources.append(resource)
        return FunnelView(funnel=funnel, resources=resources)

    def register(self, funnel: Funnel) -> Funnel:
        """Add or replace a funnel, checking its assignment set against the catalog."""
        staged = FunnelView(funnel=funnel.model_copy(update={"resource_ids": []}))
        for resource_id in funnel.resource_ids:
            resource = self._catalog.get(resource_id)
            reason = assignment_block_reason(staged, resource, self._limits)
            if reason == ErrorKindEnum.ALREADY_ASSIGNED:
                raise AlreadyAssignedError(entity_name=resource.name, resource_id=resource_id, funnel_id=funnel.id)
            if reason == ErrorKindEnum.LIMIT_REACHED:
                raise LimitReachedError(entity_name=resource.name, resource_id=resource_id, funnel_id=funnel.id)
            staged = FunnelView(
                funnel=staged.funnel.model_copy(update={"resource_ids": [*staged.funnel.resource_ids, resource_id]}),
                resources=[*staged.resources, resource],
            )

        previous = self._funnels.get(funnel.id)
        if previous is not None:
            for resource_id in previous.resource_ids:
                self._catalog.unlink(resource_id, previous.id)
        self._funnels[funnel.id] = funnel
        for resource_id in funnel.resource_ids:
            self._catalog.link(resource_id, funnel.id)
        logger.info("funnels.registered", extra={"funnel_id": funnel.id, "resource_count": len(funnel.resource_ids)})
        self._changes.notify(ChangeKindEnum.replaced, funnel.id)
        return funnel

    def unregister(self, funnel_id: str) -> None:
        funnel = self.get(funnel_id)
        for resource_id in funnel.resource_ids:
            self._catalog.unlink(resource_id, funnel_id)
        del self._funnels[funnel_id]
        self._changes.notify(ChangeKindEnum.replaced, funnel_id)

    def _store(self, funnel: Funnel, kind: ChangeKindEnum) -> Funnel:
        self._funnels[funnel.id] = funnel
        self._changes.notify(kind, funnel.id)
        return funnel

    def add_resource(self, funnel_id: str, resource_id: str, *, kind: ChangeKindEnum) -> Funnel:
        funnel = self.get(funnel_id)
        self._catalog.link(resource_id, funnel_id)
        if resource_id in funnel.resource_ids:
            return funnel
        return self._store(
            funnel.model_copy(update={"resource_ids": [*funnel.resource_ids, resource_id]}),
            kind,
        )

    def remove_resource(
        self, funnel_id: str, resource_id: str, *, kind: ChangeKindEnum, unlink: bool = True
    ) -> Funnel:
        """Drop ``resource_id`` from the funnel.

        With ``unlink=False`` the catalog keeps counting the resource as held by
        the funnel until the caller unlinks it.
        """
        funnel = self.get(funnel_id)
        if unlink:
            self._catalog.unlink(resource_id, funnel_id)
        if resource_id not in funnel.resource_ids:
            return funnel
        remaining = [existing for existing in funnel.resource_ids if existing != resource_id]
        return self._store(funnel.model_copy(update={"resource_ids": remaining}), kind)

    def set_generated_flow(self, funnel_id: str, flow: Optional[dict[str, Any]]) -> Funnel:
        funnel = self.get(funnel_id)
        return self._store(funnel.model_copy(update={"generated_flow": flow}), ChangeKindEnum.confirmed)

    def set_deployed(self, funnel_id: str, is_deployed: bool) -> Funnel:
        funnel = self.get(funnel_id)
        return self._store(funnel.model_copy(update={"is_deployed": is_deployed}), ChangeKindEnum.confirmed)

    def prune_resources(self, resource_ids: Iterable[str]) -> list[str]:
        """Drop vanished resource ids from every funnel; returns the affected funnel ids."""
        vanished = set(resource_ids)
        affected: list[str] = []
        for funnel in list(self._funnels.values()):
            remaining = [resource_id for resource_id in funnel.resource_ids if resource_id not in vanished]
            if len(remaining) == len(funnel.resource_ids):
                continue
            for resource_id in set(funnel.resource_ids) & vanished:
                self._catalog.unlink(resource_id, funnel.id)
            self._store(funnel.model_copy(update={"resource_ids": remaining}), ChangeKindEnum.replaced)
            affected.append(funnel.id)
        if affected:
            logger.warning("funnels.pruned_vanished_resources", extra={"funnel_ids": affected})
        return affected
