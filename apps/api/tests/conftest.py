import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from cidery_core.db import get_session
from cidery_core.models import Base
from main import app


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
async def client(session_factory):
    async def override_session():
        async with session_factory() as s:
            yield s

    app.dependency_overrides[get_session] = override_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def make_vessel(client):
    async def _make(name="Tank 1", capacity=1000, **extra):
        r = await client.post("/vessels", json={"name": name, "capacity": capacity, **extra})
        assert r.status_code == 200, r.text
        return r.json()
    return _make


@pytest.fixture
def make_batch(client):
    async def _make(name="Batch", volume=500, product_type="cider", start_date="2025-03-05T10:00:00Z", **extra):
        r = await client.post("/batches", json={
            "name": name,
            "initial_volume": volume,
            "product_type": product_type,
            "start_date": start_date,
            **extra,
        })
        assert r.status_code == 200, r.text
        return r.json()
    return _make


@pytest.fixture
def make_vendor(client):
    async def _make(name="Orchard Farm"):
        r = await client.post("/vendors", json={"name": name})
        assert r.status_code == 200, r.text
        return r.json()
    return _make


@pytest.fixture
def make_variety(client):
    async def _make(name="Dabinett", fruit_type="apple"):
        r = await client.post("/admin/varieties", json={"name": name, "fruit_type": fruit_type})
        assert r.status_code == 200, r.text
        return r.json()
    return _make
