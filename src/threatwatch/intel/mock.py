from __future__ import annotations

from typing import Optional, Set
from urllib.parse import urlsplit

from threatwatch.intel.base import IntelProvider, Payload
from threatwatch.models import EntityType, Verdict

DOMAIN_MARKERS = ["drop", "telemetry", "security", "sync", "cdn-updates"]
MALICIOUS_HASHES = {"44d88612fea8a8f36de82e1278abb02f"}
SUSPICIOUS_IP_PREFIXES = ("185.220.", "104.21.")
TOR_IP_PREFIXES = ("185.220.",)


class MockProvider(IntelProvider):
    """Offline provider with fixed demo verdicts; no network access."""

    name = "mock"
    supported_types = frozenset({EntityType.IP, EntityType.DOMAIN, EntityType.URL, EntityType.HASH})

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.calls = 0

    async def _lookup(self, entity_type: EntityType, value: str) -> Optional[Payload]:
        self.calls += 1
        v = value.lower()

        if entity_type == EntityType.URL:
            entity_type, v = EntityType.DOMAIN, (urlsplit(v).hostname or "")

        if entity_type == EntityType.DOMAIN:
            matched = [x for x in DOMAIN_MARKERS if x in v]
            if matched:
                return {"verdict": "suspicious", "confidence": 70, "reason": "keyword_match", "matched": matched}

        elif entity_type == EntityType.HASH:
            if v in MALICIOUS_HASHES:
                return {"verdict": "malicious", "confidence": 95, "family": "eicar-like-demo"}

        elif entity_type == EntityType.IP:
            if v.startswith(SUSPICIOUS_IP_PREFIXES):
                return {
                    "verdict": "suspicious",
                    "confidence": 65,
                    "reason": "range_flag",
                    "tor": v.startswith(TOR_IP_PREFIXES),
                }

        return None

    def verdict(self, payload: Payload) -> Verdict:
        return payload.get("verdict", "unknown")

    def hints(self, payload: Payload) -> Set[str]:
        out = super().hints(payload)
        if payload.get("tor"):
            out.add("tor_exit_node")
        return out
