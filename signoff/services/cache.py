# signoff/services/cache.py
"""
Read cache for approvals.

``CacheBackend`` is the storage seam: an in-process ``MemoryCache`` or the
shared ``UpstashCache`` (Upstash Redis REST). ``ApprovalCache`` owns the key
scheme and the invalidation fan-out on top of either backend.

Keys, all under ``approvals:{organisation_id}:``:
    id:{approval_id}            single approval
    ref:{reference}             single approval by reference
    list:{actor_id}:{digest}    list pages
    pending:{user_id}:...       items awaiting the user
    mine:{user_id}:...          the user's own requests
    stats:{actor_id}            dashboard counters

Every mutation bumps ``approvals-generation:{organisation_id}``. Reads note
the counter before going to the database and only store their result if it
has not moved, so a read that overlapped a write cannot re-cache stale rows.
"""

from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Optional, Protocol

import httpx
import structlog

from signoff.config import settings

logger = structlog.get_logger()

# one pooled client for every Upstash call
_http = httpx.AsyncClient(
    limits=httpx.Limits(max_connections=20, max_keepalive_connections=10, keepalive_expiry=30)
)


async def close_cache_client() -> None:
    if not _http.is_closed:
        await _http.aclose()


class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl: int) -> None: ...

    async def delete(self, *keys: str) -> None: ...

    async def scan_prefix(self, prefix: str) -> list[str]: ...

    async def incr(self, key: str) -> int: ...


class MemoryCache:
    """Per-process TTL cache."""

    def __init__(self):
        self._entries: dict[str, tuple[str, float]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= time.monotonic():
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl: int) -> None:
        self._entries[key] = (value, time.monotonic() + ttl)

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._entries.pop(key, None)

    async def scan_prefix(self, prefix: str) -> list[str]:
        return [k for k in list(self._entries) if k.startswith(prefix)]

    async def incr(self, key: str) -> int:
        count = int(await self.get(key) or 0) + 1
        self._entries[key] = (str(count), float("inf"))
        return count

    def clear(self) -> None:
        self._entries.clear()


class UpstashCache:
    """Upstash Redis over its REST API. Commands are posted as JSON arrays."""

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None):
        self.url = url or settings.UPSTASH_REDIS_REST_URL
        self.headers = {
            "Authorization": f"Bearer {token or settings.UPSTASH_REDIS_REST_TOKEN}"
        }

    async def _command(self, *args: Any) -> Any:
        r = await _http.post(self.url, headers=self.headers, json=list(args))
        r.raise_for_status()
        return r.json().get("result")

    async def get(self, key: str) -> Optional[str]:
        return await self._command("GET", key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self._command("SET", key, value, "EX", ttl)

    async def delete(self, *keys: str) -> None:
        if keys:
            await self._command("DEL", *keys)

    async def scan_prefix(self, prefix: str) -> list[str]:
        keys: list[str] = []
        cursor = "0"
        while True:
            result = await self._command("SCAN", cursor, "MATCH", f"{prefix}*", "COUNT", 200)
            cursor, batch = str(result[0]), result[1]
            keys.extend(batch)
            if cursor == "0":
                return keys

    async def incr(self, key: str) -> int:
        return int(await self._command("INCR", key))

    async def ping(self) -> bool:
        return await self._command("PING") == "PONG"


def create_backend(kind: Optional[str] = None) -> CacheBackend:
    kind = (kind or settings.CACHE_BACKEND).lower()
    if kind == "upstash":
        return UpstashCache()
    if kind == "memory":
        return MemoryCache()
    raise ValueError(f"Unknown cache backend: {kind}")


# cached views that list or count approvals; any mutation can change them
DERIVED_VIEWS = ("list", "pending", "mine", "stats")


def _digest(params: dict) -> str:
    raw = json.dumps(params, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode()).hexdigest()[:32]


class ApprovalCache:
    def __init__(self, backend: CacheBackend):
        self.backend = backend

    # ---------- keys ----------

    @staticmethod
    def namespace(organisation_id) -> str:
        return f"approvals:{organisation_id}:"

    def id_key(self, organisation_id, approval_id) -> str:
        return f"{self.namespace(organisation_id)}id:{approval_id}"

    def ref_key(self, organisation_id, reference: str) -> str:
        return f"{self.namespace(organisation_id)}ref:{reference}"

    def list_key(self, organisation_id, actor_id, params: dict) -> str:
        return f"{self.namespace(organisation_id)}list:{actor_id}:{_digest(params)}"

    def pending_key(self, organisation_id, user_id) -> str:
        return f"{self.namespace(organisation_id)}pending:{user_id}:all"

    def mine_key(self, organisation_id, user_id, params: dict) -> str:
        return f"{self.namespace(organisation_id)}mine:{user_id}:{_digest(params)}"

    def stats_key(self, organisation_id, actor_id) -> str:
        return f"{self.namespace(organisation_id)}stats:{actor_id}"

    # ---------- reads / writes ----------

    async def get_json(self, key: str) -> Optional[Any]:
        try:
            raw = await self.backend.get(key)
        except Exception as exc:
            logger.warning("cache_read_failed", key=key, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("cache_entry_corrupt", key=key)
            return None

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            await self.backend.set(
                key, json.dumps(value, default=str), ttl or settings.CACHE_DEFAULT_TTL
            )
        except Exception as exc:
            logger.warning("cache_write_failed", key=key, error=str(exc))

    # ---------- generations ----------

    @staticmethod
    def generation_key(organisation_id) -> str:
        # outside the namespace so invalidation never sweeps it
        return f"approvals-generation:{organisation_id}"

    async def generation(self, organisation_id) -> Optional[int]:
        """Invalidation counter for the organisation. None when it cannot be read."""
        try:
            raw = await self.backend.get(self.generation_key(organisation_id))
        except Exception as exc:
            logger.warning("cache_generation_read_failed", error=str(exc))
            return None
        try:
            return int(raw or 0)
        except (TypeError, ValueError):
            return None

    async def fill(
        self,
        key: str,
        value: Any,
        organisation_id,
        generation: Optional[int],
        ttl: Optional[int] = None,
    ) -> bool:
        """
        Store a value read from the database at ``generation``.

        Skipped when an invalidation for the organisation ran since the read,
        and rolled back when one lands while the write is in flight.
        """
        if generation is None or await self.generation(organisation_id) != generation:
            logger.debug("cache_fill_skipped", key=key)
            return False
        await self.set_json(key, value, ttl)
        if await self.generation(organisation_id) != generation:
            logger.debug("cache_fill_raced", key=key)
            await self._delete(key)
            return False
        return True

    async def _delete(self, *keys: str) -> bool:
        try:
            await self.backend.delete(*keys)
        except Exception as exc:
            logger.warning("cache_delete_failed", keys=len(keys), error=str(exc))
            return False
        return True

    # ---------- invalidation ----------

    def keys_for(self, approval) -> tuple[list[str], list[str]]:
        """Exact keys and key prefixes a mutation of ``approval`` makes stale."""
        ns = self.namespace(approval.organisation_id)
        keys = [self.id_key(approval.organisation_id, approval.id)]
        if approval.approval_reference:
            keys.append(self.ref_key(approval.organisation_id, approval.approval_reference))
        prefixes = [f"{ns}{view}:" for view in DERIVED_VIEWS]
        return keys, prefixes

    async def invalidate(self, approval) -> None:
        """
        Drop every cached view ``approval`` appears in.

        The counter bump and the exact keys come first so a failing scan
        still leaves fills skipped and the single-item entries gone.
        """
        organisation_id = approval.organisation_id
        keys, prefixes = self.keys_for(approval)
        try:
            await self.backend.incr(self.generation_key(organisation_id))
        except Exception as exc:
            logger.warning(
                "cache_generation_bump_failed", approval_id=str(approval.id), error=str(exc)
            )

        dropped = len(keys) if await self._delete(*keys) else 0

        try:
            candidates = await self.backend.scan_prefix(self.namespace(organisation_id))
        except Exception as exc:
            logger.warning("cache_invalidation_failed", approval_id=str(approval.id), error=str(exc))
            return
        stale = [k for k in candidates if k.startswith(tuple(prefixes))]
        if stale and await self._delete(*stale):
            dropped += len(stale)
        logger.debug("cache_invalidated", approval_id=str(approval.id), keys=dropped)
