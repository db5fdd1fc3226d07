"""Shared test fixtures for pytest."""

from dataclasses import dataclass, field

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from qalloc.db import get_session_factory, init_db
from qalloc.db.models import (
    Compute,
    ComputeDescription,
    ComputeType,
    Disk,
    Endpoint,
    NicTemplate,
    Profile,
    ResourcePool,
    Subnet,
)
from qalloc.metrics import metrics
from qalloc.schemas import TaskResult
from qalloc.store import RecordStore


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Fresh settings per test, independent of any local .env file."""
    import qalloc.config

    monkeypatch.setenv("QALLOC_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("QALLOC_LOG_LEVEL", "WARNING")
    qalloc.config.get_settings.cache_clear()
    metrics.reset()
    yield
    qalloc.config.get_settings.cache_clear()


@pytest_asyncio.fixture
async def engine():
    """A fresh in-memory database for each test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def store(engine):
    return RecordStore(get_session_factory(engine), serialize=True)


class RecordingNotifier:
    """Notifier that keeps every delivered result."""

    def __init__(self):
        self.results: list[tuple[str | None, TaskResult]] = []

    async def notify(self, callback_ref, result):
        self.results.append((callback_ref, result))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@dataclass
class Inventory:
    """Ids of a minimal allocation-ready inventory."""

    pool_id: str = "pool-1"
    endpoint_id: str = "endpoint-1"
    endpoint_compute_id: str = "endpoint-host"
    description_id: str = "desc-web"
    profile_id: str = "profile-1"
    host_ids: list[str] = field(default_factory=lambda: ["host-a", "host-b"])
    disk_template_id: str = "disk-template"
    nic_template_id: str = "nic-template"
    subnet_id: str = "subnet-1"


async def seed_inventory(store: RecordStore, **overrides) -> Inventory:
    """Create a pool with two VM hosts, an endpoint, a profile and a
    description with one disk template and one NIC template."""
    inventory = Inventory(**overrides)

    await store.create(
        ResourcePool(
            id=inventory.pool_id,
            name="Pool",
            custom_properties={"__endpointLink": inventory.endpoint_id},
        )
    )
    await store.create(
        Endpoint(
            id=inventory.endpoint_id,
            name="aws",
            endpoint_type="aws",
            compute_id=inventory.endpoint_compute_id,
            region_id="us-east-1",
            zone_id="us-east-1a",
            environment_name="AWS",
        )
    )
    await store.create(Profile(id=inventory.profile_id, endpoint_type="aws"))
    for host_id in inventory.host_ids:
        await store.create(
            Compute(id=host_id, type=ComputeType.VM_HOST, resource_pool_id=inventory.pool_id)
        )

    await store.create(Disk(id=inventory.disk_template_id, name="boot", capacity_mbytes=8192))
    await store.create(Subnet(id=inventory.subnet_id, network_id="net-1"))
    await store.create(
        NicTemplate(
            id=inventory.nic_template_id,
            name="eth0",
            subnet_id=inventory.subnet_id,
            security_group_ids=["sg-1"],
        )
    )
    await store.create(
        ComputeDescription(
            id=inventory.description_id,
            name="web",
            cpu_count=2,
            total_memory_bytes=2048,
            disk_template_ids=[inventory.disk_template_id],
            nic_template_ids=[inventory.nic_template_id],
            tag_ids=["tag-1"],
        )
    )
    return inventory


@pytest_asyncio.fixture
async def inventory(store):
    return await seed_inventory(store)
