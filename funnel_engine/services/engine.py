from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Optional

from funnel_engine.config import EngineLimits
from funnel_engine.enums import ReadinessStateEnum, ValueCategoryEnum
from funnel_engine.schemas import Funnel, FunnelView, Resource, ResourceDraft, ResourcePatch
from funnel_engine.services.assignments import AssignmentCoordinator
from funnel_engine.services.catalog import CatalogStore
from funnel_engine.services.feedback import FeedbackSignal, FeedbackSignalEmitter
from funnel_engine.services.funnel_board import FunnelBoard
from funnel_engine.services.readiness import FunnelReadinessGate, ReadinessReport

logger = logging.getLogger(__name__)


class FunnelEngine:
    """Single entry point for presentation layers.

    Owns one catalog, one funnel board, the readiness gate, the assignment
    coordinator and the feedback queue, all sharing the same collections.
    """

    def __init__(
        self,
        *,
        persistence,
        generation,
        deployment,
        limits: Optional[EngineLimits] = None,
        signals: Optional[FeedbackSignalEmitter] = None,
        resources: Iterable[Resource] = (),
    ) -> None:
        self.limits = limits or EngineLimits.from_settings()
        self.signals = signals or FeedbackSignalEmitter(
            ttl_seconds=self.limits.signal_ttl_seconds,
            max_signals=self.limits.max_signals,
        )
        self.catalog = CatalogStore(
            persistence=persistence,
            limits=self.limits,
            signals=self.signals,
            resources=resources,
        )
        self.funnels = FunnelBoard(catalog=self.catalog, limits=self.limits)
        self.readiness = FunnelReadinessGate(
            catalog=self.catalog,
            board=self.funnels,
            limits=self.limits,
            generation=generation,
            deployment=deployment,
        )
        self.assignments = AssignmentCoordinator(
            catalog=self.catalog,
            board=self.funnels,
            gate=self.readiness,
            persistence=persistence,
            limits=self.limits,
            signals=self.signals,
        )

    # -- reads -------------------------------------------------------------

    def list_resources(self, category: Optional[ValueCategoryEnum] = None) -> list[Resource]:
        return self.catalog.list(category)

    def is_name_available(self, name: str, excluding_id: Optional[str] = None) -> bool:
        return self.catalog.is_name_available(name, excluding_id)

    def can_assign(self, funnel_id: str, resource_id: str) -> bool:
        return self.assignments.can_assign(funnel_id, resource_id)

    def funnel_view(self, funnel_id: str) -> FunnelView:
        return self.funnels.view(funnel_id)

    def readiness_report(self, funnel_id: str) -> ReadinessReport:
        return self.readiness.evaluate(funnel_id)

    def readiness_state(self, funnel_id: str) -> ReadinessStateEnum:
        return self.readiness.state(funnel_id)

    def is_locked(self, funnel_id: str) -> bool:
        return self.readiness.is_locked(funnel_id)

    def active_signals(self) -> list[FeedbackSignal]:
        return self.signals.active()

    # -- mutations ---------------------------------------------------------

    def register_funnel(self, funnel: Funnel) -> Funnel:
        return self.funnels.register(funnel)

    def unregister_funnel(self, funnel_id: str) -> None:
        self.funnels.unregister(funnel_id)

    async def create_resource(self, draft: ResourceDraft) -> Resource:
        return await self.catalog.create(draft)

    async def update_resource(self, resource_id: str, patch: ResourcePatch) -> Resource:
        return await self.catalog.update(resource_id, patch)

    async def delete_resource(self, resource_id: str) -> None:
        await self.catalog.delete(resource_id)

    async def delete_resources(self, resource_ids: Iterable[str]) -> int:
        return await self.catalog.delete_many(resource_ids)

    async def assign(self, funnel_id: str, resource_id: str) -> bool:
        return await self.assignments.assign(funnel_id, resource_id)

    async def unassign(self, funnel_id: str, resource_id: str) -> bool:
        return await self.assignments.unassign(funnel_id, resource_id)

    def highlight_deficient(self, funnel_id: str) -> list[str]:
        return self.readiness.highlight_deficient(funnel_id)

    async def generate(self, funnel_id: str) -> Funnel:
        return await self.readiness.generate(funnel_id)

    async def deploy(self, funnel_id: str) -> Funnel:
        return await self.readiness.deploy(funnel_id)

    async def take_offline(self, funnel_id: str) -> Funnel:
        return await self.readiness.take_offline(funnel_id)

    async def resync(self) -> list[str]:
        """Reload the catalog and drop assignments to resources deleted elsewhere."""
        vanished = await self.catalog.resync()
        affected = self.funnels.prune_resources(vanished)
        logger.info("engine.resynced", extra={"vanished": sorted(vanished), "affected_funnels": affected})
        return affected
