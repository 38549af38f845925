from __future__ import annotations

from typing import Optional

from threatwatch.intel.base import IntelProvider, Payload
from threatwatch.models import EntityType, Verdict

BASE_URL = "https://otx.alienvault.com/api/v1/indicators"


class OTXProvider(IntelProvider):
    name = "otx"
    supported_types = frozenset({EntityType.IP, EntityType.DOMAIN, EntityType.HASH})
    api_key_env = "OTX_API_KEY"

    async def _lookup(self, entity_type: EntityType, value: str) -> Optional[Payload]:
        if entity_type == EntityType.IP:
            section = "IPv6" if ":" in value else "IPv4"
            url = f"{BASE_URL}/{section}/{value}/general"
        elif entity_type == EntityType.DOMAIN:
            url = f"{BASE_URL}/domain/{value}/general"
        else:
            url = f"{BASE_URL}/file/{value}/general"

        data = await self._request("GET", url, headers={"X-OTX-API-KEY": self.api_key})
        if not data:
            return None

        pulse_info = data.get("pulse_info", {}) or {}
        pulses = pulse_info.get("pulses", []) or []
        return {
            "pulse_count": int(pulse_info.get("count", 0)),
            "reputation": data.get("reputation", 0),
            "country_code": data.get("country_code", ""),
            "asn": data.get("asn", ""),
            "malware_families": sorted({f for p in pulses for f in (p.get("malware_families") or []) if isinstance(f, str)}),
        }

    def verdict(self, payload: Payload) -> Verdict:
        pulses = int(payload.get("pulse_count", 0))
        if pulses > 10:
            return "malicious"
        if pulses > 0:
            return "suspicious"
        return "unknown"
