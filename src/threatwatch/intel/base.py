from __future__ import annotations

import os
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, FrozenSet, Optional, Set

import httpx
from dotenv import load_dotenv

from threatwatch.intel.ratelimit import RateLimiter
from threatwatch.models import EntityType, Verdict

load_dotenv()

Payload = Dict[str, Any]


class IntelProvider(ABC):
    """
    One external intelligence source.

    ``lookup`` returns the provider's payload, or None when the source has
    nothing on the indicator. Transport and HTTP errors propagate so the
    orchestrator can classify them.
    """

    name: str
    supported_types: FrozenSet[EntityType] = frozenset()
    # environment variable holding the API key; None for keyless sources
    api_key_env: Optional[str] = None
    requires_key: bool = True

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout_seconds: float = 12,
        limiter: Optional[RateLimiter] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if api_key is None and self.api_key_env:
            api_key = os.getenv(self.api_key_env, "")
        self.api_key = (api_key or "").strip()
        self.timeout_seconds = timeout_seconds
        self.limiter = limiter
        self._client = client

    def enabled(self) -> bool:
        if self.api_key_env and self.requires_key:
            return bool(self.api_key)
        return True

    def supports(self, entity_type: EntityType) -> bool:
        return entity_type in self.supported_types

    async def lookup(self, entity_type: EntityType, value: str) -> Optional[Payload]:
        if not self.enabled() or not self.supports(entity_type):
            return None
        return await self._lookup(entity_type, value)

    @abstractmethod
    async def _lookup(self, entity_type: EntityType, value: str) -> Optional[Payload]:
        raise NotImplementedError

    def verdict(self, payload: Payload) -> Verdict:
        return "unknown"

    def hints(self, payload: Payload) -> Set[str]:
        """Reputation context flags implied by a payload."""
        v = self.verdict(payload)
        return {v} if v in ("malicious", "suspicious") else set()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            yield client

    async def _request(self, method: str, url: str, **kwargs: Any) -> Optional[Payload]:
        async with self._session() as client:
            r = await client.request(method, url, **kwargs)
        if r.status_code == 404:
            return None
        r.raise_for_status()
        return r.json()
