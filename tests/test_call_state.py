"""Call state store tests — active calls and the pending-call mailbox."""

import pytest

from kephale.schemas.call import PendingCall
from kephale.services.call_state import CallStateStore, call_key, claimed_key, pending_key


def _pending(caller="caller-1", conv="conv-1"):
    return PendingCall(
        caller_id=caller,
        caller_name="Caller",
        offer={"type": "offer", "sdp": "v=0"},
        conversation_id=conv,
    )


@pytest.mark.asyncio
async def test_active_call_roundtrip_and_ttl(fake_redis):
    store = CallStateStore(fake_redis, active_ttl=300)
    assert await store.set_in_call("a", "conv-1", "b") is True

    state = await store.get_call_state("a")
    assert state.conversation_id == "conv-1"
    assert state.with_user_id == "b"
    assert state.started_at > 0
    assert 0 < await fake_redis.ttl(call_key("a")) <= 300
    assert await store.is_in_call("a") is True
    assert await store.is_in_call("b") is False


@pytest.mark.asyncio
async def test_active_call_stored_in_client_format(fake_redis):
    store = CallStateStore(fake_redis)
    await store.set_in_call("a", "conv-1", "b")
    raw = await fake_redis.get(call_key("a"))
    assert '"conversationId":"conv-1"' in raw
    assert '"withUserId":"b"' in raw


@pytest.mark.asyncio
async def test_end_call_clears_both(fake_redis):
    store = CallStateStore(fake_redis)
    await store.set_in_call("a", "conv-1", "b")
    await store.set_in_call("b", "conv-1", "a")

    assert await store.end_call("a", "b") is True
    assert await store.get_calls(["a", "b"]) == {"a": None, "b": None}


@pytest.mark.asyncio
async def test_pending_is_single_slot(fake_redis):
    store = CallStateStore(fake_redis, pending_ttl=60)
    await store.set_pending("r", _pending(caller="first"))
    await store.set_pending("r", _pending(caller="second"))

    assert (await store.peek_pending("r")).caller_id == "second"
    assert 0 < await fake_redis.ttl(pending_key("r")) <= 60


@pytest.mark.asyncio
async def test_peek_keeps_claim_consumes(fake_redis):
    store = CallStateStore(fake_redis)
    await store.set_pending("r", _pending())

    assert (await store.peek_pending("r")).caller_id == "caller-1"
    assert (await store.peek_pending("r")) is not None

    claimed = await store.claim_pending("r")
    assert claimed.offer == {"type": "offer", "sdp": "v=0"}
    assert await store.claim_pending("r") is None
    assert await store.peek_pending("r") is None


@pytest.mark.asyncio
async def test_clear_pending(fake_redis):
    store = CallStateStore(fake_redis)
    await store.set_pending("r", _pending())
    assert await store.clear_pending("r") is True
    assert await store.peek_pending("r") is None


@pytest.mark.asyncio
async def test_corrupt_state_reads_as_none(fake_redis):
    store = CallStateStore(fake_redis)
    await fake_redis.set(call_key("a"), "not json")
    await fake_redis.set(pending_key("a"), '{"callerId": 1}')
    assert await store.get_call_state("a") is None
    assert await store.peek_pending("a") is None


@pytest.mark.asyncio
async def test_without_redis():
    store = CallStateStore(None)
    assert await store.set_in_call("a", "c", "b") is False
    assert await store.set_pending("a", _pending()) is False
    assert await store.get_calls(["a"]) == {"a": None}
    assert await store.peek_pending("a") is None
    assert await store.claim_pending("a") is None
    assert await store.end_call("a") is False
    assert await store.take_pending_from("a", "b") is None


@pytest.mark.asyncio
async def test_take_from_other_caller_leaves_slot_and_ttl(fake_redis):
    store = CallStateStore(fake_redis, pending_ttl=60)
    await store.set_pending("r", _pending(caller="caller-2"))
    await fake_redis.expire(pending_key("r"), 10)

    assert await store.take_pending_from("r", "caller-1") is None
    assert (await store.peek_pending("r")).caller_id == "caller-2"
    assert 0 < await fake_redis.ttl(pending_key("r")) <= 10


@pytest.mark.asyncio
async def test_take_from_matching_caller_removes_slot(fake_redis):
    store = CallStateStore(fake_redis)
    await store.set_pending("r", _pending(caller="caller-1"))

    taken = await store.take_pending_from("r", "caller-1")
    assert taken.conversation_id == "conv-1"
    assert await fake_redis.exists(pending_key("r")) == 0


@pytest.mark.asyncio
async def test_claimed_call_can_still_be_taken_once(fake_redis):
    store = CallStateStore(fake_redis)
    await store.set_pending("r", _pending(caller="caller-1", conv="conv-7"))

    assert (await store.claim_pending("r")).caller_id == "caller-1"
    assert await store.peek_pending("r") is None
    assert await fake_redis.exists(claimed_key("r")) == 1

    assert await store.take_pending_from("r", "caller-2") is None
    taken = await store.take_pending_from("r", "caller-1")
    assert taken.conversation_id == "conv-7"
    assert await fake_redis.exists(claimed_key("r")) == 0
    assert await store.take_pending_from("r", "caller-1") is None


@pytest.mark.asyncio
async def test_newer_invite_wins_over_claimed_copy(fake_redis):
    store = CallStateStore(fake_redis)
    await store.set_pending("r", _pending(caller="caller-1"))
    await store.claim_pending("r")
    await store.set_pending("r", _pending(caller="caller-2"))

    taken = await store.take_pending_from("r", "caller-2")
    assert taken.caller_id == "caller-2"
    assert (await store.take_pending_from("r", "caller-1")).caller_id == "caller-1"
