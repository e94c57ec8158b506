import asyncio
import os
import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("ENGINE_DB_URL", "sqlite:///./test_funnel_engine.db")
os.environ.setdefault("CATALOG_RESOURCE_LIMIT", "10")
os.environ.setdefault("FUNNEL_PAID_CAPACITY", "3")
os.environ.setdefault("FUNNEL_FREE_CAPACITY", "3")
os.environ.setdefault("FEEDBACK_SIGNAL_TTL_SECONDS", "3")

from funnel_engine.clients.flows import DeploymentServiceError, GenerationServiceError  # noqa: E402
from funnel_engine.clients.persistence import PersistenceServiceError  # noqa: E402
from funnel_engine.config import EngineLimits  # noqa: E402
from funnel_engine.schemas import Resource  # noqa: E402
from funnel_engine.services.engine import FunnelEngine  # noqa: E402


class _Holds:
    """Per-method queues of events a fake call waits on before completing."""

    def __init__(self) -> None:
        self._events: dict[str, list[asyncio.Event]] = {}
        self._failures: dict[str, int] = {}

    def hold(self, method: str) -> asyncio.Event:
        event = asyncio.Event()
        self._events.setdefault(method, []).append(event)
        return event

    def fail_next(self, method: str, times: int = 1) -> None:
        self._failures[method] = self._failures.get(method, 0) + times

    async def _enter(self, method: str) -> bool:
        should_fail = self._failures.get(method, 0) > 0
        if should_fail:
            self._failures[method] -= 1
        events = self._events.get(method)
        if events:
            await events.pop(0).wait()
        return should_fail


class FakePersistence(_Holds):
    def __init__(self, resources=()) -> None:
        super().__init__()
        self.resources: dict[str, Resource] = {resource.id: resource for resource in resources}
        self.assignments: dict[str, list[str]] = {}
        self.calls: list[tuple] = []
        self._next_id = 0

    async def list_resources(self):
        self.calls.append(("list_resources",))
        if await self._enter("list_resources"):
            raise PersistenceServiceError(message="list failed")
        return list(self.resources.values())

    async def create_resource(self, draft):
        self.calls.append(("create_resource", draft.name))
        if await self._enter("create_resource"):
            raise PersistenceServiceError(message="create failed")
        self._next_id += 1
        created = Resource.model_validate({**draft.model_dump(), "id": f"srv-{self._next_id}"})
        self.resources[created.id] = created
        return created

    async def update_resource(self, resource_id, patch):
        self.calls.append(("update_resource", resource_id, patch.changes()))
        if await self._enter("update_resource"):
            raise PersistenceServiceError(message="update failed")
        updated = patch.apply_to(self.resources[resource_id])
        self.resources[resource_id] = updated
        return updated

    async def delete_resource(self, resource_id):
        self.calls.append(("delete_resource", resource_id))
        if await self._enter("delete_resource"):
            raise PersistenceServiceError(message="delete failed")
        self.resources.pop(resource_id, None)

    async def set_funnel_assignments(self, funnel_id, resource_ids):
        self.calls.append(("set_funnel_assignments", funnel_id, list(resource_ids)))
        if await self._enter("set_funnel_assignments"):
            raise PersistenceServiceError(message="assignment write failed")
        self.assignments[funnel_id] = list(resource_ids)
        return list(resource_ids)


def build_flow(*product_names: str) -> dict:
    blocks: dict = {"start": {"type": "intro"}}
    offer_block_ids = []
    for index, name in enumerate(product_names):
        block_id = f"offer-{index}"
        blocks[block_id] = {"type": "offer", "resourceName": name}
        offer_block_ids.append(block_id)
    return {
        "startBlockId": "start",
        "stages": [
            {"name": "INTRO", "blockIds": ["start"]},
            {"name": "OFFER", "blockIds": offer_block_ids},
        ],
        "blocks": blocks,
    }


class FakeGeneration(_Holds):
    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple[str, list[str]]] = []
        self.flow: dict | None = None

    async def generate(self, funnel_id, resources):
        self.calls.append((funnel_id, [resource.id for resource in resources]))
        if await self._enter("generate"):
            raise GenerationServiceError(message="generation failed")
        if self.flow is not None:
            return self.flow
        return build_flow(*(resource.name for resource in resources))


class FakeDeployment(_Holds):
    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple[str, str]] = []

    async def deploy(self, funnel_id):
        self.calls.append(("deploy", funnel_id))
        if await self._enter("deploy"):
            raise DeploymentServiceError(message="deploy failed")

    async def take_offline(self, funnel_id):
        self.calls.append(("take_offline", funnel_id))
        if await self._enter("take_offline"):
            raise DeploymentServiceError(message="take offline failed")


@pytest.fixture()
def persistence():
    return FakePersistence()


@pytest.fixture()
def generation():
    return FakeGeneration()


@pytest.fixture()
def deployment():
    return FakeDeployment()


@pytest.fixture()
def make_engine(persistence, generation, deployment):
    def factory(*, limits: EngineLimits | None = None, resources=()) -> FunnelEngine:
        resources = list(resources)
        for resource in resources:
            persistence.resources[resource.id] = resource
        return FunnelEngine(
            persistence=persistence,
            generation=generation,
            deployment=deployment,
            limits=limits or EngineLimits(),
            resources=resources,
        )

    return factory
