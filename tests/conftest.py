"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- The FastAPI test client
- Webhook keys and signed envelopes
- Mocked outbound HTTP (httpx.AsyncClient)
"""
# Settings are read at import time, so the environment is prepared first
import base64
import os

TEST_ENCRYPTION_KEY = base64.b64encode(bytes(range(32))).decode("ascii")
TEST_HMAC_KEY = "test-hmac-secret"
TEST_ADMIN_API_KEY = "test-admin-key"

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("WEBHOOK_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
os.environ.setdefault("WEBHOOK_HMAC_KEY", TEST_HMAC_KEY)
os.environ.setdefault("ADMIN_API_KEY", TEST_ADMIN_API_KEY)
os.environ.setdefault("PARTNER_API_BASE_URL", "https://partner.example.com")
os.environ.setdefault("PARTNER_API_USERNAME", "erp-user")
os.environ.setdefault("PARTNER_API_PASSWORD", "erp-password")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SYNC_JOBS_FILE", "tests/does-not-exist/sync-jobs.json")

import json
import uuid
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient, Response
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from partner_sync.db.database import Base, get_db
from partner_sync.domain.services.crypto_verifier import encrypt_envelope
from partner_sync.domain.services.runtime import reset_runtime
from partner_sync.domain.services.work_queue import WorkQueue
from partner_sync.main import app


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
        hide_parameters=True,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def queue(db_session: AsyncSession) -> WorkQueue:
    return WorkQueue(db_session)


@pytest.fixture(autouse=True)
def fresh_runtime():
    """Every test starts with a new token cache, partner client and scheduler"""
    reset_runtime()
    yield
    reset_runtime()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession):
    """Create test client with database override"""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": TEST_ADMIN_API_KEY}


# ============================================================================
# Webhook helpers
# ============================================================================

@pytest.fixture
def webhook_keys() -> dict[str, str]:
    return {"hmac_key": TEST_HMAC_KEY, "enc_key": TEST_ENCRYPTION_KEY}


@pytest.fixture
def make_webhook():
    """Build a signed webhook request: returns (json body, signature header)"""

    def _make(
        payload: dict | str,
        webhook_type: str = "ProductChanged",
        guid: str | None = None,
    ) -> tuple[dict, str]:
        plaintext = payload if isinstance(payload, str) else json.dumps(payload)
        envelope, signature = encrypt_envelope(
            plaintext,
            guid=guid or str(uuid.uuid4()),
            webhook_type=webhook_type,
            hmac_key=TEST_HMAC_KEY,
            enc_key=TEST_ENCRYPTION_KEY,
        )
        return envelope.model_dump(by_alias=True), signature

    return _make


# ============================================================================
# Mock External Services
# ============================================================================

def make_response(status_code: int = 200, body: dict | str | None = None) -> Response:
    """Real httpx.Response with a JSON or text body"""
    if isinstance(body, dict):
        return Response(status_code, json=body)
    return Response(status_code, text=body or "")


@pytest.fixture
def mock_http():
    """
    Patch httpx.AsyncClient.

    Tests set ``mock_http.post.return_value`` / ``mock_http.request.return_value``
    (or ``side_effect``) and inspect the recorded calls.
    """
    with patch("httpx.AsyncClient") as mock_client:
        mock_instance = AsyncMock()
        mock_instance.post = AsyncMock(return_value=make_response(200, {}))
        mock_instance.request = AsyncMock(return_value=make_response(200, {}))
        mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
        mock_instance.__aexit__ = AsyncMock(return_value=None)

        mock_client.return_value = mock_instance

        yield mock_instance


@pytest.fixture
def partner_login_response() -> Response:
    return make_response(
        200,
        {"access_token": "partner-token-1", "expires_in": 3600, "token_type": "Bearer"},
    )


@pytest.fixture
def failing_session() -> MagicMock:
    """AsyncSession stand-in whose commit fails, for storage error paths"""
    from sqlalchemy.exc import OperationalError

    session = MagicMock(spec=AsyncSession)
    session.commit = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("database is locked")))
    session.rollback = AsyncMock()
    return session


@pytest.fixture
def response_factory():
    return make_response
