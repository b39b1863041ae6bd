import pytest

from poolauth.service.errors import SessionMismatch
from poolauth.service.pending_flows import MfaPending, MfaSetupPending, PendingFlowStore


def _mfa_pending(uid="uid-1"):
    return MfaPending(
        interaction_id=uid, account_id="acct-1", pool_id="pool-1", email="alice@example.com"
    )


async def test_round_trip_bound_to_interaction():
    store = PendingFlowStore(None)
    await store.put("sess-1", _mfa_pending())

    flow = await store.get("sess-1", "uid-1", MfaPending)
    assert flow.account_id == "acct-1"
    assert flow.pool_id == "pool-1"


async def test_other_interaction_id_is_a_mismatch():
    store = PendingFlowStore(None)
    await store.put("sess-1", _mfa_pending("uid-1"))

    with pytest.raises(SessionMismatch) as exc:
        await store.get("sess-1", "uid-2", MfaPending)
    assert exc.value.status_code == 400
    assert exc.value.error_code == "session_mismatch"


async def test_wrong_kind_is_a_mismatch():
    store = PendingFlowStore(None)
    await store.put("sess-1", _mfa_pending())

    with pytest.raises(SessionMismatch):
        await store.get("sess-1", "uid-1", MfaSetupPending)


async def test_missing_session_is_a_mismatch():
    store = PendingFlowStore(None)
    with pytest.raises(SessionMismatch):
        await store.get(None, "uid-1", MfaPending)
    with pytest.raises(SessionMismatch):
        await store.get("unknown", "uid-1", MfaPending)


async def test_put_replaces_previous_flow():
    store = PendingFlowStore(None)
    await store.put("sess-1", _mfa_pending())
    await store.put(
        "sess-1",
        MfaSetupPending(
            interaction_id="uid-1",
            account_id="acct-2",
            pool_id="pool-1",
            email="bob@example.com",
            redirect_uri="https://app.example.test/cb",
        ),
    )

    with pytest.raises(SessionMismatch):
        await store.get("sess-1", "uid-1", MfaPending)
    flow = await store.get("sess-1", "uid-1", MfaSetupPending)
    assert flow.redirect_uri == "https://app.example.test/cb"


async def test_clear_removes_flow():
    store = PendingFlowStore(None)
    await store.put("sess-1", _mfa_pending())
    await store.clear("sess-1")
    await store.clear(None)

    with pytest.raises(SessionMismatch):
        await store.get("sess-1", "uid-1", MfaPending)


async def test_expired_flow_is_gone():
    store = PendingFlowStore(None, ttl_seconds=0)
    await store.put("sess-1", _mfa_pending())

    with pytest.raises(SessionMismatch):
        await store.get("sess-1", "uid-1", MfaPending)


class DictCache:
    """Records what the flow store writes through the cache interface."""

    def __init__(self):
        self.records = {}
        self.ttls = {}

    async def set_pending_flow(self, session_id, record, ttl_seconds):
        self.records[session_id] = record
        self.ttls[session_id] = ttl_seconds

    async def get_pending_flow(self, session_id):
        return self.records.get(session_id)

    async def delete_pending_flow(self, session_id):
        self.records.pop(session_id, None)


async def test_cache_backed_store_serializes_kind():
    cache = DictCache()
    store = PendingFlowStore(cache, ttl_seconds=120)
    await store.put("sess-1", _mfa_pending())

    assert cache.records["sess-1"]["kind"] == "mfa_pending"
    assert cache.ttls["sess-1"] == 120
    flow = await store.get("sess-1", "uid-1", MfaPending)
    assert flow.email == "alice@example.com"

    await store.clear("sess-1")
    assert "sess-1" not in cache.records


async def test_unknown_kind_in_cache_is_ignored():
    cache = DictCache()
    cache.records["sess-1"] = {"kind": "something_else", "interaction_id": "uid-1"}
    store = PendingFlowStore(cache)

    with pytest.raises(SessionMismatch):
        await store.get("sess-1", "uid-1", MfaPending)
