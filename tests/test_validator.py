from __future__ import annotations

from funnel_engine.config import EngineLimits
from funnel_engine.enums import ErrorKindEnum, OriginKindEnum, ValueCategoryEnum
from funnel_engine.schemas import Funnel, FunnelView, Resource
from funnel_engine.services.validator import (
    assignment_block_reason,
    can_assign,
    category_capacity,
    normalize_resource_name,
)


def _resource(resource_id: str, category: ValueCategoryEnum) -> Resource:
    return Resource(
        id=resource_id,
        name=f"Resource {resource_id}",
        origin_kind=OriginKindEnum.OWNED,
        value_category=category,
    )


def _view(*resources: Resource) -> FunnelView:
    funnel = Funnel(id="f1", name="Launch", resource_ids=[resource.id for resource in resources])
    return FunnelView(funnel=funnel, resources=list(resources))


def test_normalize_resource_name_is_case_insensitive_and_collapses_whitespace():
    assert normalize_resource_name("Pro  Duct") == normalize_resource_name("pro duct")
    assert normalize_resource_name("  Pro\tDuct \n") == "pro duct"
    assert normalize_resource_name("") == ""


def test_category_capacity_reads_limits_per_category():
    limits = EngineLimits(paid_capacity=2, free_capacity=5)

    assert category_capacity(ValueCategoryEnum.PAID, limits) == 2
    assert category_capacity(ValueCategoryEnum.FREE, limits) == 5


def test_can_assign_rejects_when_paid_capacity_reached():
    limits = EngineLimits(paid_capacity=1)
    paid = _resource("p1", ValueCategoryEnum.PAID)
    second_paid = _resource("p2", ValueCategoryEnum.PAID)
    free = _resource("g1", ValueCategoryEnum.FREE)
    view = _view(paid)

    assert can_assign(view, second_paid, limits) is False
    assert assignment_block_reason(view, second_paid, limits) == ErrorKindEnum.LIMIT_REACHED
    assert can_assign(view, free, limits) is True


def test_can_assign_rejects_when_free_capacity_reached():
    limits = EngineLimits(free_capacity=2)
    view = _view(_resource("g1", ValueCategoryEnum.FREE), _resource("g2", ValueCategoryEnum.FREE))

    assert can_assign(view, _resource("g3", ValueCategoryEnum.FREE), limits) is False
    assert can_assign(view, _resource("p1", ValueCategoryEnum.PAID), limits) is True


def test_can_assign_rejects_duplicates_before_capacity():
    limits = EngineLimits(paid_capacity=1)
    paid = _resource("p1", ValueCategoryEnum.PAID)
    view = _view(paid)

    assert assignment_block_reason(view, paid, limits) == ErrorKindEnum.ALREADY_ASSIGNED


def test_zero_capacity_blocks_every_resource_of_that_category():
    limits = EngineLimits(paid_capacity=0)

    assert can_assign(_view(), _resource("p1", ValueCategoryEnum.PAID), limits) is False
