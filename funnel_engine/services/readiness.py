from __future__ import annotations

import logging
from dataclasses import dataclass, field
from collections.abc import Callable
from typing import Any, Optional

from funnel_engine.clients.http import ServiceError
from funnel_engine.config import EngineLimits
from funnel_engine.enums import DeficiencyEnum, ReadinessStateEnum, ValueCategoryEnum
from funnel_engine.errors import (
    DeploymentFailedError,
    DeploymentMismatchError,
    GenerationFailedError,
    LockedError,
    NotFoundError,
    NotReadyError,
)
from funnel_engine.schemas import Funnel, FunnelView, Resource
from funnel_engine.services.catalog import CatalogStore, is_local_id
from funnel_engine.services.funnel_board import FunnelBoard
from funnel_engine.services.observers import ChangeEvent
from funnel_engine.services.validator import can_assign

logger = logging.getLogger(__name__)

LOCKED_STATES = frozenset({ReadinessStateEnum.GENERATING, ReadinessStateEnum.DEPLOYED})
_PRODUCT_STAGES = {"OFFER", "VALUE_DELIVERY"}
_HIGHLIGHT_KEYWORDS = (
    "chat",
    "forum",
    "ai",
    "course",
    "files",
    "sell",
    "merch",
    "voice",
    "call",
    "livestreaming",
    "content",
    "clip",
    "trading",
    "bounties",
)


@dataclass(frozen=True)
class ReadinessReport:
    funnel_id: str
    state: ReadinessStateEnum
    deficiencies: frozenset[DeficiencyEnum]
    assigned_count: int
    free_count: int
    paid_count: int
    highlighted_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_locked(self) -> bool:
        return self.state in LOCKED_STATES

    @property
    def can_generate(self) -> bool:
        return not self.deficiencies and self.state in {
            ReadinessStateEnum.READY_TO_GENERATE,
            ReadinessStateEnum.GENERATED,
        }

    @property
    def can_deploy(self) -> bool:
        return self.state == ReadinessStateEnum.GENERATED


@dataclass(frozen=True)
class DeploymentCheck:
    missing_products: list[str]
    extra_resource_ids: list[str]

    @property
    def is_valid(self) -> bool:
        return not self.missing_products and not self.extra_resource_ids


def evaluate_deficiencies(view: FunnelView, limits: EngineLimits) -> frozenset[DeficiencyEnum]:
    deficiencies: set[DeficiencyEnum] = set()
    if len(view.resources) < limits.min_total_resources:
        deficiencies.add(DeficiencyEnum.too_few_total)
    free_count = view.count(ValueCategoryEnum.FREE)
    if free_count == 0 or free_count < limits.min_free_resources:
        deficiencies.add(DeficiencyEnum.no_free_resource)
    return frozenset(deficiencies)


def has_minimum_flow_structure(flow: Any) -> bool:
    if not isinstance(flow, dict):
        return False
    stages = flow.get("stages")
    blocks = flow.get("blocks")
    if not isinstance(stages, list) or not stages:
        return False
    if not isinstance(blocks, dict) or not blocks:
        return False
    start_block_id = flow.get("startBlockId")
    return isinstance(start_block_id, str) and start_block_id in blocks


def _generated_product_names(flow: dict[str, Any]) -> list[str]:
    blocks = flow.get("blocks") if isinstance(flow.get("blocks"), dict) else {}
    product_block_ids: set[str] = set()
    for stage in flow.get("stages") or []:
        if not isinstance(stage, dict) or stage.get("name") not in _PRODUCT_STAGES:
            continue
        product_block_ids.update(block_id for block_id in stage.get("blockIds") or [] if isinstance(block_id, str))

    names: list[str] = []
    for block_id, block in blocks.items():
        if block_id not in product_block_ids or not isinstance(block, dict):
            continue
        resource_name = block.get("resourceName")
        if isinstance(resource_name, str) and resource_name and resource_name not in names:
            names.append(resource_name)
    return names


def check_deployment_match(view: FunnelView) -> DeploymentCheck:
    """Compare the products a generated flow offers with the funnel's assigned resources."""
    flow = view.funnel.generated_flow
    if not flow:
        return DeploymentCheck(missing_products=[], extra_resource_ids=[resource.id for resource in view.resources])
    generated = _generated_product_names(flow)
    generated_keys = {name.lower() for name in generated}
    assigned_keys = {resource.name.lower() for resource in view.resources}
    return DeploymentCheck(
        missing_products=[name for name in generated if name.lower() not in assigned_keys],
        extra_resource_ids=[resource.id for resource in view.resources if resource.name.lower() not in generated_keys],
    )


def _highlight_rank(resource: Resource) -> tuple[int, int, str]:
    name = resource.name.lower()
    return (
        0 if "discord" in name else 1,
        0 if any(keyword in name for keyword in _HIGHLIGHT_KEYWORDS) else 1,
        name,
    )


def suggest_highlights(view: FunnelView, catalog: list[Resource], limits: EngineLimits) -> list[str]:
    """Pick catalog resources that would lift ``view`` out of INSUFFICIENT.

    Every assignable PAID resource is suggested, then FREE resources ranked
    by name until both the FREE minimum and the total minimum are covered.
    """
    assignable = [
        resource
        for resource in catalog
        if not is_local_id(resource.id) and can_assign(view, resource, limits)
    ]
    paid_room = max(0, limits.paid_capacity - view.count(ValueCategoryEnum.PAID))
    free_room = max(0, limits.free_capacity - view.count(ValueCategoryEnum.FREE))

    paid = [resource for resource in assignable if resource.value_category == ValueCategoryEnum.PAID][:paid_room]
    needed_total = max(0, limits.min_total_resources - len(view.resources))
    needed_free = max(0, max(1, limits.min_free_resources) - view.count(ValueCategoryEnum.FREE))
    gifts_needed = min(free_room, max(needed_free, needed_total - len(paid)))

    gifts = sorted(
        (resource for resource in assignable if resource.value_category == ValueCategoryEnum.FREE),
        key=_highlight_rank,
    )[:gifts_needed]
    return [resource.id for resource in paid] + [resource.id for resource in gifts]


class FunnelReadinessGate:
    """Readiness state machine over each funnel's assigned-resource set.

    INSUFFICIENT -> READY_TO_GENERATE -> GENERATING -> GENERATED -> DEPLOYED.
    State is derived, never stored: it follows from the assignment set, the
    in-flight generation marker and the funnel's ``generated_flow`` and
    ``is_deployed`` flags, and is recomputed whenever the board or the catalog
    reports a change.

    Once a flow has been generated the funnel stays GENERATED (or DEPLOYED)
    even if its set later falls below the minimums; INSUFFICIENT only applies
    to funnels without a flow. The report still carries the deficiencies, so
    callers can tell a generated funnel that would no longer qualify.

    Generation and deployment are refused while assignment writes for the
    funnel are still in flight.
    """

    def __init__(
        self,
        *,
        catalog: CatalogStore,
        board: FunnelBoard,
        limits: EngineLimits,
        generation,
        deployment,
    ) -> None:
        self._catalog = catalog
        self._board = board
        self._limits = limits
        self._generation = generation
        self._deployment = deployment
        self._generating: set[str] = set()
        self._deploying: set[str] = set()
        self._highlighted: dict[str, frozenset[str]] = {}
        self._last_state: dict[str, ReadinessStateEnum] = {}
        self._has_pending_writes: Callable[[str], bool] = lambda _funnel_id: False
        board.subscribe(self._on_funnel_change)
        catalog.subscribe(self._on_catalog_change)

    # -- derivation --------------------------------------------------------

    def _derive_state(self, view: FunnelView, deficiencies: frozenset[DeficiencyEnum]) -> ReadinessStateEnum:
        funnel = view.funnel
        if funnel.is_deployed:
            return ReadinessStateEnum.DEPLOYED
        if funnel.id in self._generating:
            return ReadinessStateEnum.GENERATING
        if funnel.is_generated:
            return ReadinessStateEnum.GENERATED
        if deficiencies:
            return ReadinessStateEnum.INSUFFICIENT
        return ReadinessStateEnum.READY_TO_GENERATE

    def evaluate(self, funnel_id: str) -> ReadinessReport:
        view = self._board.view(funnel_id)
        deficiencies = evaluate_deficiencies(view, self._limits)
        return ReadinessReport(
            funnel_id=funnel_id,
            state=self._derive_state(view, deficiencies),
            deficiencies=deficiencies,
            assigned_count=len(view.resources),
            free_count=view.count(ValueCategoryEnum.FREE),
            paid_count=view.count(ValueCategoryEnum.PAID),
            highlighted_ids=self._highlighted.get(funnel_id, frozenset()),
        )

    def state(self, funnel_id: str) -> ReadinessStateEnum:
        return self.evaluate(funnel_id).state

    def is_locked(self, funnel_id: str) -> bool:
        return self.state(funnel_id) in LOCKED_STATES

    def is_generating(self, funnel_id: str) -> bool:
        return funnel_id in self._generating

    def track_assignment_writes(self, has_pending_writes: Callable[[str], bool]) -> None:
        self._has_pending_writes = has_pending_writes

    def _check_no_pending_writes(self, view: FunnelView) -> None:
        if self._has_pending_writes(view.funnel.id):
            raise LockedError(
                entity_name=view.name,
                funnel_id=view.funnel.id,
                message=f'"{view.name}" has assignment changes still being saved.',
            )

    # -- highlights --------------------------------------------------------

    def highlighted_ids(self, funnel_id: str) -> frozenset[str]:
        return self._highlighted.get(funnel_id, frozenset())

    def highlight_deficient(self, funnel_id: str) -> list[str]:
        report = self.evaluate(funnel_id)
        if not report.deficiencies:
            return []
        suggested = suggest_highlights(self._board.view(funnel_id), self._catalog.list(), self._limits)
        self._highlighted[funnel_id] = frozenset(suggested)
        logger.debug("readiness.highlighted", extra={"funnel_id": funnel_id, "resource_ids": suggested})
        return suggested

    # -- change tracking ---------------------------------------------------

    def refresh(self, funnel_id: str) -> Optional[ReadinessReport]:
        try:
            report = self.evaluate(funnel_id)
        except NotFoundError:
            return None
        if not report.deficiencies and funnel_id in self._highlighted:
            del self._highlighted[funnel_id]
            report = self.evaluate(funnel_id)
        previous = self._last_state.get(funnel_id)
        if previous != report.state:
            self._last_state[funnel_id] = report.state
            logger.info(
                "readiness.transition",
                extra={
                    "funnel_id": funnel_id,
                    "from_state": previous.value if previous else None,
                    "to_state": report.state.value,
                },
            )
        return report

    def _forget(self, funnel_id: str) -> None:
        self._highlighted.pop(funnel_id, None)
        self._last_state.pop(funnel_id, None)

    def _on_funnel_change(self, event: ChangeEvent) -> None:
        if self.refresh(event.entity_id) is None:
            self._forget(event.entity_id)

    def _on_catalog_change(self, event: ChangeEvent) -> None:
        if event.entity_id == "*":
            funnel_ids = [funnel.id for funnel in self._board.list()]
        else:
            funnel_ids = sorted(self._catalog.assigned_funnel_ids(event.entity_id))
        for funnel_id in funnel_ids:
            self.refresh(funnel_id)

    # -- generation and deployment ----------------------------------------

    async def generate(self, funnel_id: str) -> Funnel:
        view = self._board.view(funnel_id)
        report = self.evaluate(funnel_id)
        if report.is_locked:
            raise LockedError(entity_name=view.name, funnel_id=funnel_id)
        if not report.can_generate:
            raise NotReadyError(deficiencies=report.deficiencies, entity_name=view.name, funnel_id=funnel_id)
        self._check_no_pending_writes(view)

        self._generating.add(funnel_id)
        self.refresh(funnel_id)
        try:
            flow = await self._generation.generate(funnel_id, list(view.resources))
            if not has_minimum_flow_structure(flow):
                raise GenerationFailedError(
                    entity_name=view.name,
                    funnel_id=funnel_id,
                    message="Generation returned a flow without stages, blocks or a valid start block.",
                )
            self._board.set_generated_flow(funnel_id, flow)
        except ServiceError as exc:
            logger.warning("readiness.generation_failed", extra={"funnel_id": funnel_id, "error": str(exc)})
            raise GenerationFailedError(entity_name=view.name, funnel_id=funnel_id, message=str(exc)) from exc
        finally:
            self._generating.discard(funnel_id)
            self.refresh(funnel_id)
        return self._board.get(funnel_id)

    async def deploy(self, funnel_id: str) -> Funnel:
        view = self._board.view(funnel_id)
        report = self.evaluate(funnel_id)
        if report.state == ReadinessStateEnum.GENERATING or funnel_id in self._deploying:
            raise LockedError(entity_name=view.name, funnel_id=funnel_id)
        if report.state == ReadinessStateEnum.DEPLOYED:
            raise NotReadyError(
                entity_name=view.name,
                funnel_id=funnel_id,
                message=f'"{view.name}" is already live.',
            )
        if not report.can_deploy:
            raise NotReadyError(deficiencies=report.deficiencies, entity_name=view.name, funnel_id=funnel_id)

        check = check_deployment_match(view)
        if not check.is_valid:
            raise DeploymentMismatchError(
                missing_products=check.missing_products,
                extra_resource_ids=check.extra_resource_ids,
                entity_name=view.name,
                funnel_id=funnel_id,
            )
        self._check_no_pending_writes(view)

        self._deploying.add(funnel_id)
        try:
            await self._deployment.deploy(funnel_id)
        except ServiceError as exc:
            logger.warning("readiness.deploy_failed", extra={"funnel_id": funnel_id, "error": str(exc)})
            raise DeploymentFailedError(entity_name=view.name, funnel_id=funnel_id, message=str(exc)) from exc
        finally:
            self._deploying.discard(funnel_id)
        return self._board.set_deployed(funnel_id, True)

    async def take_offline(self, funnel_id: str) -> Funnel:
        view = self._board.view(funnel_id)
        if self.state(funnel_id) != ReadinessStateEnum.DEPLOYED:
            raise NotReadyError(
                entity_name=view.name,
                funnel_id=funnel_id,
                message=f'"{view.name}" is not live.',
            )
        if funnel_id in self._deploying:
            raise LockedError(entity_name=view.name, funnel_id=funnel_id)

        self._deploying.add(funnel_id)
        try:
            await self._deployment.take_offline(funnel_id)
        except ServiceError as exc:
            logger.warning("readiness.take_offline_failed", extra={"funnel_id": funnel_id, "error": str(exc)})
            raise DeploymentFailedError(entity_name=view.name, funnel_id=funnel_id, message=str(exc)) from exc
        finally:
            self._deploying.discard(funnel_id)
        return self._board.set_deployed(funnel_id, False)
