from __future__ import annotations

from typing import Optional

from threatwatch.intel.base import IntelProvider, Payload
from threatwatch.models import EntityType, Verdict

BASE_URL = "https://threatfox-api.abuse.ch/api/v1/"


class ThreatFoxProvider(IntelProvider):
    name = "threatfox"
    supported_types = frozenset({EntityType.HASH, EntityType.DOMAIN, EntityType.IP})
    api_key_env = "THREATFOX_AUTH_KEY"
    requires_key = False

    async def _lookup(self, entity_type: EntityType, value: str) -> Optional[Payload]:
        headers = {"Auth-Key": self.api_key} if self.api_key else {}
        resp = await self._request(
            "POST", BASE_URL, json={"query": "search_ioc", "search_term": value}, headers=headers
        )
        if not resp or resp.get("query_status") != "ok":
            return None
        rows = resp.get("data") or []
        if not isinstance(rows, list) or not rows:
            return None
        first = rows[0]
        return {
            "threat_type": first.get("threat_type", ""),
            "malware": first.get("malware_printable") or first.get("malware", ""),
            "confidence_level": int(first.get("confidence_level") or 0),
            "ioc_type": first.get("ioc_type", ""),
            "first_seen": first.get("first_seen", ""),
            "last_seen": first.get("last_seen"),
            "tags": first.get("tags") or [],
            "matches": len(rows),
        }

    def verdict(self, payload: Payload) -> Verdict:
        confidence = int(payload.get("confidence_level", 0))
        if confidence >= 75:
            return "malicious"
        if confidence > 0:
            return "suspicious"
        return "unknown"
