from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Optional

from funnel_engine.config import EngineLimits
from funnel_engine.enums import ErrorKindEnum, ValueCategoryEnum
from funnel_engine.schemas import FunnelView, Resource


def normalize_resource_name(name: str) -> str:
    return " ".join((name or "").split()).casefold()


def category_capacity(category: ValueCategoryEnum, limits: EngineLimits) -> int:
    if category == ValueCategoryEnum.PAID:
        return limits.paid_capacity
    return limits.free_capacity


def full_category(
    funnel: FunnelView,
    resource: Resource,
    limits: EngineLimits,
    *,
    occupancy: Optional[Mapping[ValueCategoryEnum, int]] = None,
    categories: Optional[Iterable[ValueCategoryEnum]] = None,
) -> Optional[ValueCategoryEnum]:
    """Return the first category ``resource`` would overflow in ``funnel``.

    ``occupancy`` overrides the counts taken from the funnel's current set and
    ``categories`` lists every category the resource may end up holding.
    """
    candidates = set(categories or (resource.value_category,))
    for category in ValueCategoryEnum:
        if category not in candidates:
            continue
        held = occupancy[category] if occupancy is not None else funnel.count(category)
        if held >= category_capacity(category, limits):
            return category
    return None


def assignment_block_reason(
    funnel: FunnelView,
    resource: Resource,
    limits: EngineLimits,
    *,
    occupancy: Optional[Mapping[ValueCategoryEnum, int]] = None,
    categories: Optional[Iterable[ValueCategoryEnum]] = None,
) -> Optional[ErrorKindEnum]:
    """Return why ``resource`` may not join ``funnel``, or None when it may."""
    if funnel.has_resource(resource.id):
        return ErrorKindEnum.ALREADY_ASSIGNED
    if full_category(funnel, resource, limits, occupancy=occupancy, categories=categories) is not None:
        return ErrorKindEnum.LIMIT_REACHED
    return None


def can_assign(funnel: FunnelView, resource: Resource, limits: EngineLimits) -> bool:
    return assignment_block_reason(funnel, resource, limits) is None
