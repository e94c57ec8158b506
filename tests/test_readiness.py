from __future__ import annotations

import asyncio

import pytest

from funnel_engine.config import EngineLimits
from funnel_engine.enums import DeficiencyEnum, OriginKindEnum, ReadinessStateEnum, ValueCategoryEnum
from funnel_engine.errors import (
    DeploymentFailedError,
    DeploymentMismatchError,
    GenerationFailedError,
    LockedError,
    NotReadyError,
    PersistenceFailureError,
)
from funnel_engine.schemas import Funnel, FunnelView, Resource
from funnel_engine.services.readiness import (
    check_deployment_match,
    evaluate_deficiencies,
    has_minimum_flow_structure,
    suggest_highlights,
)


def _resource(resource_id: str, name: str, category: ValueCategoryEnum) -> Resource:
    return Resource(id=resource_id, name=name, origin_kind=OriginKindEnum.OWNED, value_category=category)


def _flow(*product_names: str) -> dict:
    blocks = {"start": {"type": "intro"}}
    blocks.update({f"offer-{index}": {"resourceName": name} for index, name in enumerate(product_names)})
    return {
        "startBlockId": "start",
        "stages": [
            {"name": "INTRO", "blockIds": ["start"]},
            {"name": "VALUE_DELIVERY", "blockIds": [f"offer-{index}" for index in range(len(product_names))]},
        ],
        "blocks": blocks,
    }


CATALOG = [
    _resource("p1", "Pro Course", ValueCategoryEnum.PAID),
    _resource("p2", "Trading Signals", ValueCategoryEnum.PAID),
    _resource("g1", "Starter Checklist", ValueCategoryEnum.FREE),
    _resource("g2", "Welcome Guide", ValueCategoryEnum.FREE),
]


def _ready_engine(make_engine):
    engine = make_engine(resources=CATALOG)
    engine.register_funnel(Funnel(id="f1", name="Launch", resource_ids=["p1", "p2", "g1"]))
    return engine


def test_insufficient_iff_too_few_total_or_no_free():
    limits = EngineLimits()
    paid = [_resource(f"p{index}", f"Paid {index}", ValueCategoryEnum.PAID) for index in range(3)]
    free = _resource("g1", "Gift", ValueCategoryEnum.FREE)

    def deficiencies(*resources):
        funnel = Funnel(id="f1", name="Launch", resource_ids=[resource.id for resource in resources])
        return evaluate_deficiencies(FunnelView(funnel=funnel, resources=list(resources)), limits)

    assert deficiencies(*paid) == {DeficiencyEnum.no_free_resource}
    assert deficiencies(free) == {DeficiencyEnum.too_few_total}
    assert deficiencies(paid[0], paid[1], free) == frozenset()


def test_free_resource_completes_readiness_and_clears_highlights(make_engine):
    engine = make_engine(resources=CATALOG)
    engine.register_funnel(Funnel(id="f1", name="Launch", resource_ids=["p1", "p2"]))

    report = engine.readiness_report("f1")
    assert report.state == ReadinessStateEnum.INSUFFICIENT
    assert report.deficiencies == {DeficiencyEnum.too_few_total, DeficiencyEnum.no_free_resource}

    highlighted = engine.highlight_deficient("f1")
    assert highlighted == ["g1"]
    assert engine.readiness_report("f1").highlighted_ids == {"g1"}

    asyncio.run(engine.assign("f1", "g2"))

    report = engine.readiness_report("f1")
    assert report.state == ReadinessStateEnum.READY_TO_GENERATE
    assert report.deficiencies == frozenset()
    assert report.highlighted_ids == frozenset()


def test_highlight_deficient_is_empty_for_ready_funnel(make_engine):
    engine = _ready_engine(make_engine)

    assert engine.highlight_deficient("f1") == []


def test_suggest_highlights_ranks_free_resources_by_name():
    catalog = [
        _resource("g-zeta", "Zeta Guide", ValueCategoryEnum.FREE),
        _resource("g-bonus", "Bonus Checklist", ValueCategoryEnum.FREE),
        _resource("g-ai", "AI Toolkit", ValueCategoryEnum.FREE),
        _resource("g-discord", "Discord Community", ValueCategoryEnum.FREE),
        _resource("p-course", "Pro Masterclass", ValueCategoryEnum.PAID),
    ]
    view = FunnelView(funnel=Funnel(id="f1", name="Launch"))

    suggested = suggest_highlights(view, catalog, EngineLimits())

    assert suggested == ["p-course", "g-discord", "g-ai"]


def test_flow_structure_requires_stages_blocks_and_start_block():
    assert has_minimum_flow_structure(_flow("Pro Course")) is True
    assert has_minimum_flow_structure({"stages": [], "blocks": {"a": {}}, "startBlockId": "a"}) is False
    assert has_minimum_flow_structure({"stages": [{"name": "OFFER"}], "blocks": {}, "startBlockId": "a"}) is False
    assert has_minimum_flow_structure({"stages": [{"name": "OFFER"}], "blocks": {"a": {}}, "startBlockId": "b"}) is False
    assert has_minimum_flow_structure(None) is False


def test_deployment_match_reports_missing_and_extra():
    funnel = Funnel(
        id="f1",
        name="Launch",
        resource_ids=["p1", "g1"],
        generated_flow=_flow("pro course", "Mystery Box"),
    )
    view = FunnelView(funnel=funnel, resources=[CATALOG[0], CATALOG[2]])

    check = check_deployment_match(view)

    assert check.missing_products == ["Mystery Box"]
    assert check.extra_resource_ids == ["g1"]
    assert check.is_valid is False


def test_failed_generation_returns_to_ready_and_locks_while_running(make_engine, generation):
    engine = _ready_engine(make_engine)

    async def scenario():
        generation.fail_next("generate")
        gate = generation.hold("generate")
        task = asyncio.create_task(engine.generate("f1"))
        await asyncio.sleep(0)

        assert engine.readiness_state("f1") == ReadinessStateEnum.GENERATING
        assert engine.is_locked("f1") is True
        with pytest.raises(LockedError):
            await engine.unassign("f1", "g1")
        with pytest.raises(LockedError):
            await engine.assign("f1", "g2")
        assert engine.can_assign("f1", "g2") is False

        gate.set()
        with pytest.raises(GenerationFailedError):
            await task

    asyncio.run(scenario())

    assert engine.readiness_state("f1") == ReadinessStateEnum.READY_TO_GENERATE
    assert engine.funnel_view("f1").funnel.resource_ids == ["p1", "p2", "g1"]
    assert engine.is_locked("f1") is False


def test_generate_rejects_insufficient_funnel(make_engine, generation):
    engine = make_engine(resources=CATALOG)
    engine.register_funnel(Funnel(id="f1", name="Launch", resource_ids=["p1"]))

    with pytest.raises(NotReadyError) as excinfo:
        asyncio.run(engine.generate("f1"))

    assert excinfo.value.deficiencies == {DeficiencyEnum.too_few_total, DeficiencyEnum.no_free_resource}
    assert generation.calls == []


def test_generation_without_valid_structure_fails(make_engine, generation):
    engine = _ready_engine(make_engine)
    generation.flow = {"stages": [], "blocks": {}}

    with pytest.raises(GenerationFailedError):
        asyncio.run(engine.generate("f1"))

    assert engine.readiness_state("f1") == ReadinessStateEnum.READY_TO_GENERATE
    assert engine.funnel_view("f1").funnel.generated_flow is None


def test_generate_deploy_and_take_offline(make_engine, generation, deployment):
    engine = _ready_engine(make_engine)

    funnel = asyncio.run(engine.generate("f1"))
    assert funnel.is_generated
    assert generation.calls == [("f1", ["p1", "p2", "g1"])]
    assert engine.readiness_state("f1") == ReadinessStateEnum.GENERATED
    assert engine.is_locked("f1") is False

    asyncio.run(engine.deploy("f1"))
    assert engine.readiness_state("f1") == ReadinessStateEnum.DEPLOYED
    assert engine.is_locked("f1") is True
    with pytest.raises(LockedError):
        asyncio.run(engine.assign("f1", "g2"))
    with pytest.raises(LockedError):
        asyncio.run(engine.unassign("f1", "g1"))
    with pytest.raises(NotReadyError, match="already live"):
        asyncio.run(engine.deploy("f1"))

    asyncio.run(engine.take_offline("f1"))
    assert engine.readiness_state("f1") == ReadinessStateEnum.GENERATED
    assert deployment.calls == [("deploy", "f1"), ("take_offline", "f1")]


def test_regenerate_is_allowed_from_generated(make_engine, generation):
    engine = _ready_engine(make_engine)
    asyncio.run(engine.generate("f1"))

    asyncio.run(engine.generate("f1"))

    assert len(generation.calls) == 2
    assert engine.readiness_state("f1") == ReadinessStateEnum.GENERATED


def test_deploy_blocked_by_product_mismatch(make_engine, deployment):
    engine = make_engine(resources=CATALOG)
    engine.register_funnel(
        Funnel(
            id="f1",
            name="Launch",
            resource_ids=["p1", "p2", "g1"],
            generated_flow=_flow("Pro Course", "Trading Signals", "Mystery Box"),
        )
    )

    with pytest.raises(DeploymentMismatchError) as excinfo:
        asyncio.run(engine.deploy("f1"))

    assert excinfo.value.missing_products == ["Mystery Box"]
    assert excinfo.value.extra_resource_ids == ["g1"]
    assert deployment.calls == []
    assert engine.readiness_state("f1") == ReadinessStateEnum.GENERATED


def test_failed_deploy_keeps_funnel_generated(make_engine, deployment):
    engine = _ready_engine(make_engine)
    asyncio.run(engine.generate("f1"))
    deployment.fail_next("deploy")

    with pytest.raises(DeploymentFailedError):
        asyncio.run(engine.deploy("f1"))

    assert engine.readiness_state("f1") == ReadinessStateEnum.GENERATED


def test_deploy_and_take_offline_require_matching_state(make_engine):
    engine = _ready_engine(make_engine)

    with pytest.raises(NotReadyError):
        asyncio.run(engine.deploy("f1"))
    with pytest.raises(NotReadyError, match="is not live"):
        asyncio.run(engine.take_offline("f1"))


def test_generate_waits_for_pending_assignment_writes(make_engine, persistence, generation):
    engine = _ready_engine(make_engine)

    async def scenario():
        persistence.fail_next("set_funnel_assignments")
        gate = persistence.hold("set_funnel_assignments")
        pending = asyncio.create_task(engine.assign("f1", "g2"))
        await asyncio.sleep(0)
        assert engine.funnel_view("f1").funnel.resource_ids == ["p1", "p2", "g1", "g2"]

        with pytest.raises(LockedError, match="still being saved"):
            await engine.generate("f1")
        assert generation.calls == []

        gate.set()
        with pytest.raises(PersistenceFailureError):
            await pending

    asyncio.run(scenario())

    assert engine.funnel_view("f1").funnel.resource_ids == ["p1", "p2", "g1"]
    asyncio.run(engine.generate("f1"))
    assert generation.calls == [("f1", ["p1", "p2", "g1"])]
    assert engine.readiness_state("f1") == ReadinessStateEnum.GENERATED


def test_generated_funnel_keeps_state_but_reports_new_deficiencies(make_engine):
    engine = _ready_engine(make_engine)
    asyncio.run(engine.generate("f1"))

    asyncio.run(engine.unassign("f1", "g1"))

    report = engine.readiness_report("f1")
    assert report.state == ReadinessStateEnum.GENERATED
    assert report.deficiencies == frozenset({DeficiencyEnum.no_free_resource, DeficiencyEnum.too_few_total})
