from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from threatwatch.intel.base import IntelProvider, Payload
from threatwatch.models import EntityType

EXAMPLE_TEXT = (
    "Leaked database dump at 203.0.113.5, contact breach@evil.com, hash d41d8cd98f00b204e9800998ecf8427e"
)
EXAMPLE_KEYWORDS = ["leaked", "database", "dump", "breach"]

T0 = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class CountingProvider(IntelProvider):
    """Keyless provider that records every lookup."""

    supported_types = frozenset(EntityType)

    def __init__(self, name: str = "counting", payload: Optional[Payload] = None, delay: float = 0.0, **kwargs):
        super().__init__(**kwargs)
        self.name = name
        self.payload = payload if payload is not None else {"verdict": "suspicious"}
        self.delay = delay
        self.calls = 0

    async def _lookup(self, entity_type: EntityType, value: str) -> Optional[Payload]:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return dict(self.payload) if self.payload else None

    def verdict(self, payload: Payload):
        return payload.get("verdict", "unknown")


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "threatwatch.db")


@pytest.fixture
def clock():
    return FakeClock()
