"""Call signaling tests — invite → answer/reject/end, status handoff.

Learn: Each test listens on the relevant user channels through fakeredis
pub/sub and asserts on the exact events the browsers would receive.
The push service is mocked at pywebpush.webpush.
"""

from unittest.mock import patch

import pytest
import requests

from conftest import auth_headers, drain, listen, make_conversation, make_user
from kephale.db.models import PushSubscription
from kephale.realtime.channels import user_channel
from kephale.services.call_state import CallStateStore

OFFER = {"type": "offer", "sdp": "v=0 offer"}
ANSWER = {"type": "answer", "sdp": "v=0 answer"}


async def _invite(client, caller, recipient, conversation):
    return await client.post(
        "/api/v1/call/signal",
        json={
            "event": "call:invite",
            "recipientId": str(recipient.id),
            "conversationId": str(conversation.id),
            "offer": OFFER,
        },
        headers=auth_headers(caller),
    )


# ═══════════════════════════════════════════════════════════
# Invite
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_invite_rings_recipient(client, fake_redis, alice, bob, conversation):
    """Invite stores the pending call and publishes call:incoming."""
    inbox = await listen(fake_redis, user_channel(str(bob.id)))

    with patch("kephale.services.webpush.webpush"):
        r = await _invite(client, alice, bob, conversation)
    assert r.status_code == 200
    assert r.json() == {"success": True}

    events = await drain(inbox)
    assert len(events) == 1
    assert events[0]["event"] == "call:incoming"
    assert events[0]["channel"] == user_channel(str(bob.id))
    assert events[0]["data"] == {
        "callerId": str(alice.id),
        "callerName": "Alice",
        "offer": OFFER,
        "conversationId": str(conversation.id),
    }

    pending = await CallStateStore(fake_redis).peek_pending(str(bob.id))
    assert pending.caller_id == str(alice.id)


@pytest.mark.asyncio
async def test_invite_sends_call_push(client, fake_redis, db_session, alice, bob, conversation):
    db_session.add(PushSubscription(
        user_id=bob.id, endpoint="https://push.example/bob", p256dh="k", auth="a",
    ))
    await db_session.commit()

    with patch("kephale.services.webpush.webpush") as webpush:
        r = await _invite(client, alice, bob, conversation)
    assert r.status_code == 200

    webpush.assert_called_once()
    kwargs = webpush.call_args.kwargs
    assert kwargs["subscription_info"]["endpoint"] == "https://push.example/bob"
    assert '"type": "call"' in kwargs["data"]
    assert "Appel entrant de Alice" in kwargs["data"]
    assert kwargs["headers"] == {"Urgency": "high"}


@pytest.mark.asyncio
async def test_invite_outside_conversation_forbidden(client, fake_redis, db_session, alice, bob, conversation):
    eve = await make_user(db_session, "Eve")
    with patch("kephale.services.webpush.webpush"):
        r = await _invite(client, eve, bob, conversation)
    assert r.status_code == 403
    assert await CallStateStore(fake_redis).peek_pending(str(bob.id)) is None


@pytest.mark.asyncio
async def test_invite_missing_offer_is_422(client, fake_redis, alice, bob, conversation):
    r = await client.post(
        "/api/v1/call/signal",
        json={
            "event": "call:invite",
            "recipientId": str(bob.id),
            "conversationId": str(conversation.id),
        },
        headers=auth_headers(alice),
    )
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_unknown_event_is_422(client, fake_redis, alice):
    r = await client.post(
        "/api/v1/call/signal",
        json={"event": "call:teleport"},
        headers=auth_headers(alice),
    )
    assert r.status_code == 422


# ═══════════════════════════════════════════════════════════
# Answer / reject / end / ICE
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_answer_connects_both_parties(client, fake_redis, alice, bob, conversation):
    with patch("kephale.services.webpush.webpush"):
        await _invite(client, alice, bob, conversation)
    caller_inbox = await listen(fake_redis, user_channel(str(alice.id)))

    r = await client.post(
        "/api/v1/call/signal",
        json={"event": "call:answer", "callerId": str(alice.id), "answer": ANSWER},
        headers=auth_headers(bob),
    )
    assert r.status_code == 200

    events = await drain(caller_inbox)
    assert [e["event"] for e in events] == ["call:answered"]
    assert events[0]["data"] == {"answer": ANSWER, "responderId": str(bob.id)}

    store = CallStateStore(fake_redis)
    assert await store.peek_pending(str(bob.id)) is None
    calls = await store.get_calls([str(alice.id), str(bob.id)])
    assert calls[str(alice.id)].with_user_id == str(bob.id)
    assert calls[str(bob.id)].with_user_id == str(alice.id)
    assert calls[str(bob.id)].conversation_id == str(conversation.id)


@pytest.mark.asyncio
async def test_answer_leaves_someone_elses_pending_call(client, fake_redis, db_session, alice, bob, conversation):
    """Answering caller A must not consume a newer invite from caller C."""
    carol = await make_user(db_session, "Carol")
    conv_bc = await make_conversation(db_session, bob, carol)

    with patch("kephale.services.webpush.webpush"):
        await _invite(client, alice, bob, conversation)
        await _invite(client, carol, bob, conv_bc)

    await client.post(
        "/api/v1/call/signal",
        json={"event": "call:answer", "callerId": str(alice.id), "answer": ANSWER},
        headers=auth_headers(bob),
    )
    pending = await CallStateStore(fake_redis).peek_pending(str(bob.id))
    assert pending.caller_id == str(carol.id)


@pytest.mark.asyncio
async def test_reject_clears_pending_and_notifies(client, fake_redis, alice, bob, conversation):
    with patch("kephale.services.webpush.webpush"):
        await _invite(client, alice, bob, conversation)
    caller_inbox = await listen(fake_redis, user_channel(str(alice.id)))

    r = await client.post(
        "/api/v1/call/signal",
        json={"event": "call:reject", "callerId": str(alice.id)},
        headers=auth_headers(bob),
    )
    assert r.status_code == 200

    events = await drain(caller_inbox)
    assert events == [{
        "channel": user_channel(str(alice.id)),
        "event": "call:rejected",
        "data": {"responderId": str(bob.id)},
    }]
    assert await CallStateStore(fake_redis).peek_pending(str(bob.id)) is None


@pytest.mark.asyncio
async def test_caller_cancel_before_answer(client, fake_redis, alice, bob, conversation):
    """call:end from the caller removes the ringing invite."""
    with patch("kephale.services.webpush.webpush"):
        await _invite(client, alice, bob, conversation)
    inbox = await listen(fake_redis, user_channel(str(bob.id)))

    r = await client.post(
        "/api/v1/call/signal",
        json={"event": "call:end", "targetUserId": str(bob.id)},
        headers=auth_headers(alice),
    )
    assert r.status_code == 200
    events = await drain(inbox)
    assert events[0]["event"] == "call:ended"
    assert events[0]["data"] == {"enderId": str(alice.id)}
    assert await CallStateStore(fake_redis).peek_pending(str(bob.id)) is None


@pytest.mark.asyncio
async def test_end_clears_active_call(client, fake_redis, alice, bob):
    store = CallStateStore(fake_redis)
    await store.set_in_call(str(alice.id), "c", str(bob.id))
    await store.set_in_call(str(bob.id), "c", str(alice.id))

    await client.post(
        "/api/v1/call/signal",
        json={"event": "call:end", "targetUserId": str(alice.id)},
        headers=auth_headers(bob),
    )
    assert await store.get_calls([str(alice.id), str(bob.id)]) == {
        str(alice.id): None,
        str(bob.id): None,
    }


@pytest.mark.asyncio
async def test_ice_candidate_forwarded(client, fake_redis, alice, bob):
    inbox = await listen(fake_redis, user_channel(str(bob.id)))
    candidate = {"candidate": "candidate:1 1 udp 2122260223 10.0.0.1 5000 typ host"}

    r = await client.post(
        "/api/v1/call/signal",
        json={"event": "call:ice-candidate", "targetUserId": str(bob.id), "candidate": candidate},
        headers=auth_headers(alice),
    )
    assert r.status_code == 200
    events = await drain(inbox)
    assert events[0]["event"] == "call:ice-candidate"
    assert events[0]["data"] == {"candidate": candidate, "senderId": str(alice.id)}


@pytest.mark.asyncio
async def test_signals_work_without_redis(client, no_redis, alice, bob):
    """Publishing is best-effort: no Redis, still a 200."""
    r = await client.post(
        "/api/v1/call/signal",
        json={"event": "call:reject", "callerId": str(alice.id)},
        headers=auth_headers(bob),
    )
    assert r.status_code == 200


# ═══════════════════════════════════════════════════════════
# Status (device handoff)
# ═══════════════════════════════════════════════════════════


@pytest.mark.asyncio
async def test_status_peek_then_claim(client, fake_redis, alice, bob, conversation):
    with patch("kephale.services.webpush.webpush"):
        await _invite(client, alice, bob, conversation)
    headers = auth_headers(bob)

    r = await client.get("/api/v1/call/status", headers=headers)
    assert r.status_code == 200
    data = r.json()
    assert data["activeCall"] is None
    assert data["pendingCall"]["callerId"] == str(alice.id)
    assert data["pendingCall"]["callerName"] == "Alice"
    assert data["pendingCall"]["offer"] == OFFER

    # Peek left it in place; claim takes it
    r = await client.get("/api/v1/call/status", params={"claim": "1"}, headers=headers)
    assert r.json()["pendingCall"]["callerId"] == str(alice.id)

    r = await client.get("/api/v1/call/status", params={"claim": "1"}, headers=headers)
    assert r.json()["pendingCall"] is None


@pytest.mark.asyncio
async def test_status_active_call_has_other_party_name(client, fake_redis, alice, bob):
    await CallStateStore(fake_redis).set_in_call(str(alice.id), "conv-9", str(bob.id))

    r = await client.get("/api/v1/call/status", headers=auth_headers(alice))
    active = r.json()["activeCall"]
    assert active["conversationId"] == "conv-9"
    assert active["withUserId"] == str(bob.id)
    assert active["withUserName"] == "Bob"


@pytest.mark.asyncio
async def test_status_unknown_party_gets_default_name(client, fake_redis, alice):
    await CallStateStore(fake_redis).set_in_call(str(alice.id), "conv-9", "ghost")

    r = await client.get("/api/v1/call/status", headers=auth_headers(alice))
    assert r.json()["activeCall"]["withUserName"] == "Utilisateur"


@pytest.mark.asyncio
async def test_answer_after_claim_connects_both_parties(client, fake_redis, alice, bob, conversation):
    """Device opened from the push: claim first, answer second."""
    with patch("kephale.services.webpush.webpush"):
        await _invite(client, alice, bob, conversation)

    r = await client.get("/api/v1/call/status", params={"claim": "1"}, headers=auth_headers(bob))
    assert r.json()["pendingCall"]["callerId"] == str(alice.id)

    r = await client.post(
        "/api/v1/call/signal",
        json={"event": "call:answer", "callerId": str(alice.id), "answer": ANSWER},
        headers=auth_headers(bob),
    )
    assert r.status_code == 200

    for me, other in ((alice, bob), (bob, alice)):
        r = await client.get("/api/v1/call/status", headers=auth_headers(me))
        data = r.json()
        assert data["pendingCall"] is None
        assert data["activeCall"]["withUserId"] == str(other.id)
        assert data["activeCall"]["conversationId"] == str(conversation.id)


@pytest.mark.asyncio
async def test_answer_without_invite_uses_signal_conversation(client, fake_redis, alice, bob):
    r = await client.post(
        "/api/v1/call/signal",
        json={
            "event": "call:answer",
            "callerId": str(alice.id),
            "answer": ANSWER,
            "conversationId": "conv-42",
        },
        headers=auth_headers(bob),
    )
    assert r.status_code == 200
    state = await CallStateStore(fake_redis).get_call_state(str(alice.id))
    assert state.with_user_id == str(bob.id)
    assert state.conversation_id == "conv-42"


@pytest.mark.asyncio
async def test_invite_survives_unreachable_push_service(client, fake_redis, db_session, alice, bob, conversation):
    db_session.add(PushSubscription(
        user_id=bob.id, endpoint="https://push.example/bob", p256dh="k", auth="a",
    ))
    await db_session.commit()
    inbox = await listen(fake_redis, user_channel(str(bob.id)))

    with patch(
        "kephale.services.webpush.webpush",
        side_effect=requests.exceptions.ConnectionError("push host unreachable"),
    ):
        r = await _invite(client, alice, bob, conversation)

    assert r.status_code == 200
    assert [e["event"] for e in await drain(inbox)] == ["call:incoming"]
    pending = await CallStateStore(fake_redis).peek_pending(str(bob.id))
    assert pending.caller_id == str(alice.id)
