"""
Unit tests for signoff/services/cache.py

Tests: MemoryCache TTL, Upstash command encoding, ApprovalCache key fan-out,
       invalidation, generation-guarded fills, degraded reads.
"""

import json
import uuid
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from signoff.domain.enums import ApprovalPriority, ApprovalStatus, ApprovalType
from signoff.services.cache import (
    ApprovalCache,
    MemoryCache,
    UpstashCache,
    create_backend,
)

ORG = uuid.uuid4()


def _approval(**overrides):
    values = dict(
        id=uuid.uuid4(),
        organisation_id=ORG,
        approval_reference="GEN-ABC123-XYZ",
        requester_id=uuid.uuid4(),
        approver_id=uuid.uuid4(),
        delegated_to_id=None,
        branch_id=uuid.uuid4(),
        type=ApprovalType.GENERAL,
        priority=ApprovalPriority.HIGH,
        status=ApprovalStatus.APPROVED,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_memory_cache_round_trip_and_expiry():
    cache = MemoryCache()
    with patch("signoff.services.cache.time") as clock:
        clock.monotonic.return_value = 100.0
        await cache.set("k", "v", ttl=10)
        assert await cache.get("k") == "v"
    with patch("signoff.services.cache.time") as clock:
        clock.monotonic.return_value = 111.0
        assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_memory_cache_scan_and_delete():
    cache = MemoryCache()
    await cache.set("approvals:1:list:a", "1", 60)
    await cache.set("approvals:1:list:b", "2", 60)
    await cache.set("approvals:2:list:a", "3", 60)

    keys = await cache.scan_prefix("approvals:1:list:")
    assert sorted(keys) == ["approvals:1:list:a", "approvals:1:list:b"]

    await cache.delete(*keys)
    assert await cache.get("approvals:1:list:a") is None
    assert await cache.get("approvals:2:list:a") == "3"


@pytest.mark.asyncio
async def test_upstash_sends_commands_as_json_arrays():
    response = MagicMock()
    response.json.return_value = {"result": "OK"}
    response.raise_for_status = MagicMock()

    with patch("signoff.services.cache._http") as http:
        http.post = AsyncMock(return_value=response)
        cache = UpstashCache(url="https://redis.example", token="tok")
        await cache.set("key", "value", 30)

    http.post.assert_awaited_once()
    _, kwargs = http.post.call_args
    assert kwargs["json"] == ["SET", "key", "value", "EX", 30]
    assert kwargs["headers"]["Authorization"] == "Bearer tok"


@pytest.mark.asyncio
async def test_upstash_scan_follows_cursor():
    pages = [
        {"result": ["7", ["p:1", "p:2"]]},
        {"result": ["0", ["p:3"]]},
    ]
    responses = []
    for page in pages:
        r = MagicMock()
        r.json.return_value = page
        responses.append(r)

    with patch("signoff.services.cache._http") as http:
        http.post = AsyncMock(side_effect=responses)
        keys = await UpstashCache(url="https://redis.example", token="t").scan_prefix("p:")

    assert keys == ["p:1", "p:2", "p:3"]
    assert http.post.await_count == 2


def test_create_backend_rejects_unknown_kind():
    assert isinstance(create_backend("memory"), MemoryCache)
    with pytest.raises(ValueError):
        create_backend("memcached")


# ---------------------------------------------------------------------------
# ApprovalCache
# ---------------------------------------------------------------------------


def test_keys_for_covers_every_derived_view():
    cache = ApprovalCache(MemoryCache())
    approval = _approval()

    keys, prefixes = cache.keys_for(approval)

    ns = f"approvals:{ORG}:"
    assert keys == [f"{ns}id:{approval.id}", f"{ns}ref:GEN-ABC123-XYZ"]
    assert prefixes == [f"{ns}list:", f"{ns}pending:", f"{ns}mine:", f"{ns}stats:"]


@pytest.mark.asyncio
async def test_invalidate_drops_entity_and_views_but_not_other_orgs():
    backend = MemoryCache()
    cache = ApprovalCache(backend)
    approval = _approval()
    other_org = uuid.uuid4()

    await cache.set_json(cache.id_key(ORG, approval.id), {"id": str(approval.id)})
    await cache.set_json(cache.ref_key(ORG, approval.approval_reference), {"id": str(approval.id)})
    await cache.set_json(cache.list_key(ORG, uuid.uuid4(), {"page": 1}), {"items": []})
    await cache.set_json(cache.stats_key(ORG, uuid.uuid4()), {"total": 1})
    await cache.set_json(cache.pending_key(ORG, approval.approver_id), [])
    untouched = cache.list_key(other_org, uuid.uuid4(), {"page": 1})
    await cache.set_json(untouched, {"items": []})

    await cache.invalidate(approval)

    assert await backend.scan_prefix(cache.namespace(ORG)) == []
    assert await cache.get_json(untouched) == {"items": []}


@pytest.mark.asyncio
async def test_invalidate_scans_the_namespace_once():
    ns = f"approvals:{ORG}:"
    approval = _approval()
    other_entity = f"{ns}id:{uuid.uuid4()}"
    backend = MagicMock()
    backend.incr = AsyncMock(return_value=2)
    backend.scan_prefix = AsyncMock(
        return_value=[f"{ns}list:a:1", f"{ns}stats:b", f"{ns}mine:c:2", other_entity]
    )
    backend.delete = AsyncMock()

    await ApprovalCache(backend).invalidate(approval)

    backend.scan_prefix.assert_awaited_once_with(ns)
    exact, swept = backend.delete.call_args_list
    assert exact.args == (f"{ns}id:{approval.id}", f"{ns}ref:GEN-ABC123-XYZ")
    assert swept.args == (f"{ns}list:a:1", f"{ns}stats:b", f"{ns}mine:c:2")


@pytest.mark.asyncio
async def test_scan_failure_still_drops_exact_keys_and_bumps_generation():
    backend = MagicMock()
    backend.incr = AsyncMock(return_value=1)
    backend.scan_prefix = AsyncMock(side_effect=ConnectionError("redis down"))
    backend.delete = AsyncMock()
    cache = ApprovalCache(backend)
    approval = _approval()

    await cache.invalidate(approval)

    backend.incr.assert_awaited_once_with(cache.generation_key(ORG))
    backend.delete.assert_awaited_once_with(
        cache.id_key(ORG, approval.id), cache.ref_key(ORG, approval.approval_reference)
    )


@pytest.mark.asyncio
async def test_generation_failure_does_not_stop_the_sweep():
    backend = MemoryCache()
    cache = ApprovalCache(backend)
    approval = _approval()
    await cache.set_json(cache.id_key(ORG, approval.id), {})
    await cache.set_json(cache.pending_key(ORG, uuid.uuid4()), [])

    with patch.object(backend, "incr", AsyncMock(side_effect=ConnectionError("redis down"))):
        await cache.invalidate(approval)

    assert await backend.scan_prefix(cache.namespace(ORG)) == []


# ---------------------------------------------------------------------------
# Generation-guarded fills
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fill_stores_when_nothing_changed():
    cache = ApprovalCache(MemoryCache())
    key = cache.stats_key(ORG, uuid.uuid4())

    generation = await cache.generation(ORG)
    assert await cache.fill(key, {"total": 3}, ORG, generation) is True
    assert await cache.get_json(key) == {"total": 3}


@pytest.mark.asyncio
async def test_fill_is_skipped_after_an_invalidation():
    cache = ApprovalCache(MemoryCache())
    key = cache.id_key(ORG, uuid.uuid4())

    generation = await cache.generation(ORG)
    await cache.invalidate(_approval())
    assert await cache.fill(key, {"status": "pending"}, ORG, generation) is False
    assert await cache.get_json(key) is None


@pytest.mark.asyncio
async def test_fill_only_tracks_its_own_organisation():
    cache = ApprovalCache(MemoryCache())
    key = cache.id_key(ORG, uuid.uuid4())

    generation = await cache.generation(ORG)
    await cache.invalidate(_approval(organisation_id=uuid.uuid4()))
    assert await cache.fill(key, {"status": "pending"}, ORG, generation) is True


@pytest.mark.asyncio
async def test_fill_is_withdrawn_when_an_invalidation_lands_mid_write():
    backend = MemoryCache()
    cache = ApprovalCache(backend)
    key = cache.list_key(ORG, uuid.uuid4(), {"page": 1})
    store = backend.set

    async def store_then_bump(*args):
        # the sweep ran before this write landed; only the counter shows it
        await store(*args)
        await backend.incr(cache.generation_key(ORG))

    generation = await cache.generation(ORG)
    with patch.object(backend, "set", side_effect=store_then_bump):
        assert await cache.fill(key, {"items": []}, ORG, generation) is False

    assert await cache.get_json(key) is None


@pytest.mark.asyncio
async def test_unreadable_generation_skips_the_fill():
    backend = MagicMock()
    backend.get = AsyncMock(side_effect=ConnectionError("redis down"))
    backend.set = AsyncMock()
    cache = ApprovalCache(backend)

    assert await cache.generation(ORG) is None
    assert await cache.fill("k", {}, ORG, 0) is False
    backend.set.assert_not_awaited()


@pytest.mark.asyncio
async def test_upstash_generation_uses_incr():
    response = MagicMock()
    response.json.return_value = {"result": 4}

    with patch("signoff.services.cache._http") as http:
        http.post = AsyncMock(return_value=response)
        count = await UpstashCache(url="https://redis.example", token="t").incr("g")

    assert count == 4
    assert http.post.call_args.kwargs["json"] == ["INCR", "g"]

@pytest.mark.asyncio
async def test_set_json_uses_default_ttl():
    backend = MagicMock()
    backend.set = AsyncMock()
    cache = ApprovalCache(backend)

    await cache.set_json("k", {"amount": 1})

    key, raw, ttl = backend.set.call_args.args
    assert key == "k"
    assert json.loads(raw) == {"amount": 1}
    assert ttl == 300
