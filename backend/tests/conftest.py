"""
Shared pytest fixtures for AuditChain tests.

Provides:
  - temporary-file SQLite database per test (real concurrent connections)
  - in-process Redis via fakeredis (isolated server per test)
  - a fully wired AuditService and an httpx client over the ASGI app
"""
from __future__ import annotations

from collections.abc import AsyncGenerator

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from auditchain.config.settings import Settings
from auditchain.db.base import Base
from auditchain.db.session import build_engine, build_session_factory
from auditchain.main import create_app
from auditchain.services.audit.service import AuditService, build_audit_service


# ─── Settings override ────────────────────────────────────────────────────────

TEST_SETTINGS = Settings(
    environment="testing",
    debug=True,
    run_migrations_on_startup=False,
    log_json=False,
    stream_backoff_base_seconds=0,
    cors_origins=["http://localhost:5173"],
)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return TEST_SETTINGS.model_copy(
        update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}"}
    )


# ─── Database ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine(settings: Settings):
    engine = build_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


# ─── Redis ────────────────────────────────────────────────────────────────────

@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest_asyncio.fixture
async def redis(redis_server):
    client = fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()


# ─── Service graph ────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def service(session_factory, redis, settings) -> AsyncGenerator[AuditService, None]:
    svc = build_audit_service(session_factory, redis, settings)
    yield svc
    await svc.audit_logger.drain()
    await svc.close()


# ─── App & HTTP client ────────────────────────────────────────────────────────

@pytest.fixture
def app(service: AuditService, settings: Settings):
    app_ = create_app(settings=settings)
    app_.state.audit_service = service
    return app_


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c


