import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import loan_service.models  # noqa: F401  (registers tables on Base.metadata)
from loan_service.db.base import Base
from loan_service.db.session import get_db
from loan_service.main import app
from loan_service.services.side_effects import SideEffectCoordinator, get_side_effects
from loan_service.tests.fakes import make_collaborators


@pytest_asyncio.fixture
async def engine():
    # One shared in-memory connection per test; StaticPool keeps it alive across sessions.
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        await session.rollback()
        await session.close()


@pytest_asyncio.fixture
async def effects():
    coordinator = SideEffectCoordinator(make_collaborators())
    yield coordinator
    await coordinator.drain()


@pytest_asyncio.fixture
async def client(db, effects):
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_side_effects] = lambda: effects
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
