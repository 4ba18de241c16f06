"""Used authorization code ledger.

Authorization codes are single-use. The provider enforces that too, but a
replayed callback (browser back button, double submit) would otherwise cost
a round-trip and a misleading ``invalid_grant``. Codes are stored only as
SHA-256 digests.
"""

from __future__ import annotations

import hashlib
import time

import redis.asyncio as aioredis

# Google authorization codes are valid for ten minutes at most
CODE_TTL_SECONDS = 600


def _digest(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


class RedisCodeLedger:
    """Ledger backed by Redis ``SET NX EX``; shared across instances."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        ttl_seconds: int = CODE_TTL_SECONDS,
        key_prefix: str = "oauth:code:",
    ) -> None:
        self._redis = redis_client
        self._ttl = ttl_seconds
        self._prefix = key_prefix

    async def claim(self, code: str) -> bool:
        """Return True the first time a code is seen, False afterwards."""
        result = await self._redis.set(
            f"{self._prefix}{_digest(code)}", "1", nx=True, ex=self._ttl
        )
        return bool(result)


class InMemoryCodeLedger:
    """Process-local ledger for development and tests."""

    def __init__(self, ttl_seconds: int = CODE_TTL_SECONDS) -> None:
        self._ttl = ttl_seconds
        self._seen: dict[str, float] = {}

    async def claim(self, code: str) -> bool:
        now = time.monotonic()
        self._seen = {k: exp for k, exp in self._seen.items() if exp > now}
        key = _digest(code)
        if key in self._seen:
            return False
        self._seen[key] = now + self._ttl
        return True
