from __future__ import annotations

from typing import Optional

from threatwatch.intel.base import IntelProvider, Payload
from threatwatch.models import EntityType, Verdict

INFO_URL = "https://pulsedive.com/api/info.php"

_RISK_VERDICTS = {
    "critical": "malicious",
    "high": "malicious",
    "medium": "suspicious",
    "low": "unknown",
    "none": "benign",
}


class PulsediveProvider(IntelProvider):
    name = "pulsedive"
    supported_types = frozenset({EntityType.IP, EntityType.DOMAIN, EntityType.URL})
    api_key_env = "PULSEDIVE_API_KEY"

    async def _lookup(self, entity_type: EntityType, value: str) -> Optional[Payload]:
        data = await self._request("GET", INFO_URL, params={"indicator": value, "key": self.api_key})
        if not data or data.get("error"):
            return None
        threats = data.get("threats") or []
        return {
            "risk": data.get("risk") or "unknown",
            "risk_recommended": data.get("risk_recommended") or "unknown",
            "threat_count": len(threats),
            "threats": [t.get("name", "") for t in threats],
            "feeds": [f.get("name", "") for f in data.get("feeds") or []],
            "properties": [p.get("name", "") for p in (data.get("riskfactors") or [])],
        }

    def verdict(self, payload: Payload) -> Verdict:
        return _RISK_VERDICTS.get(str(payload.get("risk", "")).lower(), "unknown")
