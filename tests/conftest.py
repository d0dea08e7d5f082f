"""Test fixtures — in-memory SQLite, fake Redis, real JWTs.

Learn: Testing pattern for async SQLAlchemy + FastAPI + Redis:

1. Each test gets a fresh in-memory SQLite database (aiosqlite, StaticPool so
   every session sees the same connection) with the schema created from
   the models. Nothing leaks between tests.
2. The shared Redis pool is swapped for a fakeredis instance, so presence
   TTLs, GETDEL and pub/sub behave like the real thing without a server.
3. Requests carry real JWTs minted with create_access_token, so the auth
   dependency runs exactly as in production.
4. Web Push goes through a WebPushSender with a dummy key; tests patch
   kephale.services.webpush.webpush to decide what the push service says.
"""

import uuid

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from kephale.auth.jwt import create_access_token
from kephale.db.engine import get_db
from kephale.db.models import Base, Conversation, ConversationMember, User
from kephale.main import app
from kephale.realtime import redis as realtime_redis
from kephale.services.webpush import WebPushSender, get_push_sender

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture()
async def db_session():
    """Per-test session on a brand-new in-memory database."""
    engine = create_async_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session = AsyncSession(bind=engine, expire_on_commit=False)
    try:
        yield session
    finally:
        await session.close()
        await engine.dispose()


@pytest_asyncio.fixture()
async def fake_redis(monkeypatch):
    """fakeredis installed as the app's shared Redis pool."""
    r = fakeredis.FakeAsyncRedis(decode_responses=True)
    monkeypatch.setattr(realtime_redis, "_redis", r)
    yield r
    await r.flushall()
    await r.aclose()


@pytest_asyncio.fixture()
async def no_redis(monkeypatch):
    """Simulate Redis being down at startup."""
    monkeypatch.setattr(realtime_redis, "_redis", None)


@pytest.fixture()
def push_sender():
    return WebPushSender(
        private_key="test-vapid-private-key",
        public_key="test-vapid-public-key",
        subject="mailto:test@example.com",
    )


@pytest_asyncio.fixture()
async def client(db_session, push_sender):
    """HTTP client with the app's get_db and push sender overridden."""
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_push_sender] = lambda: push_sender

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ─── Data helpers ─────────────────────────────────────────


async def make_user(db, name="Alice", role="USER", email=None) -> User:
    user = User(
        email=email or f"{name.lower()}-{uuid.uuid4().hex[:8]}@example.com",
        name=name,
        role=role,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def make_conversation(db, *members: User) -> Conversation:
    conv = Conversation(name="Chat", is_group=len(members) > 2)
    db.add(conv)
    await db.flush()
    for m in members:
        db.add(ConversationMember(conversation_id=conv.id, user_id=m.id))
    await db.commit()
    await db.refresh(conv)
    return conv


def auth_headers(user: User) -> dict[str, str]:
    token = create_access_token(str(user.id), email=user.email, role=user.role)
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture()
async def alice(db_session):
    return await make_user(db_session, "Alice")


@pytest_asyncio.fixture()
async def bob(db_session):
    return await make_user(db_session, "Bob")


@pytest_asyncio.fixture()
async def conversation(db_session, alice, bob):
    return await make_conversation(db_session, alice, bob)


# ─── Pub/sub + push helpers ───────────────────────────────


async def listen(redis, *channels: str):
    """Subscribe a test pubsub to the Redis topics behind channels."""
    from kephale.realtime.channels import redis_topic

    pubsub = redis.pubsub()
    await pubsub.subscribe(*(redis_topic(c) for c in channels))
    return pubsub


async def drain(pubsub) -> list[dict]:
    """Collect the decoded events published so far."""
    import json

    events, idle = [], 0
    while idle < 3:
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.05)
        if message is None:
            idle += 1
            continue
        idle = 0
        if message["type"] == "message":
            events.append(json.loads(message["data"]))
    return events


def push_refusal(status_code: int, failing_endpoints: set[str]):
    """side_effect for a patched webpush(): refuse some endpoints."""
    from unittest.mock import MagicMock

    from pywebpush import WebPushException

    def _webpush(subscription_info, **kwargs):
        if subscription_info["endpoint"] in failing_endpoints:
            raise WebPushException(
                f"Push failed: {status_code}",
                response=MagicMock(status_code=status_code),
            )
        return MagicMock(status_code=201)

    return _webpush
