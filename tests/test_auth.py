"""Auth dependency tests — bearer header, cookie, expiry, admin role."""

import pytest

from conftest import auth_headers, make_user
from kephale.auth.jwt import TokenError, create_access_token, verify_token


def test_verify_roundtrip_claims():
    token = create_access_token("u-1", email="u1@example.com", role="ADMIN")
    payload = verify_token(token)
    assert payload["sub"] == "u-1"
    assert payload["email"] == "u1@example.com"
    assert payload["role"] == "ADMIN"


def test_verify_rejects_expired():
    token = create_access_token("u-1", expires_minutes=-1)
    with pytest.raises(TokenError, match="expired"):
        verify_token(token)


def test_verify_rejects_garbage():
    with pytest.raises(TokenError):
        verify_token("not-a-jwt")


@pytest.mark.asyncio
async def test_missing_token_is_401(client, fake_redis):
    r = await client.post("/api/v1/presence")
    assert r.status_code == 401
    assert r.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_invalid_token_is_401(client, fake_redis):
    r = await client.post(
        "/api/v1/presence", headers={"Authorization": "Bearer nope"}
    )
    assert r.status_code == 401


@pytest.mark.asyncio
async def test_cookie_token_accepted(client, fake_redis, alice):
    token = auth_headers(alice)["Authorization"].removeprefix("Bearer ")
    r = await client.post("/api/v1/presence", headers={"Cookie": f"auth-token={token}"})
    assert r.status_code == 200
    assert r.json()["online"] is True


@pytest.mark.asyncio
async def test_admin_routes_require_admin_role(client, fake_redis, alice):
    r = await client.get("/api/v1/admin/realtime", headers=auth_headers(alice))
    assert r.status_code == 403


@pytest.mark.asyncio
async def test_admin_realtime_overview(client, fake_redis, db_session, alice):
    admin = await make_user(db_session, "Root", role="SUPER_ADMIN")
    await client.post("/api/v1/presence", headers=auth_headers(alice))

    r = await client.get("/api/v1/admin/realtime", headers=auth_headers(admin))
    assert r.status_code == 200
    data = r.json()
    assert data["redisAvailable"] is True
    assert data["onlineUsers"] == 1
    assert "vapidConfigured" in data


@pytest.mark.asyncio
async def test_admin_lists_every_device(client, fake_redis, db_session, alice, bob):
    from kephale.db.models import PushSubscription

    admin = await make_user(db_session, "Root", role="ADMIN")
    for user in (alice, bob):
        db_session.add(PushSubscription(
            user_id=user.id, endpoint=f"https://push.example/{user.name}", p256dh="k", auth="a",
        ))
    await db_session.commit()

    r = await client.get(
        "/api/v1/admin/push-subscriptions", params={"limit": 10}, headers=auth_headers(admin)
    )
    assert r.status_code == 200
    owners = {d["userId"] for d in r.json()}
    assert owners == {str(alice.id), str(bob.id)}
