from __future__ import annotations

import base64
from typing import Optional

from threatwatch.intel.base import IntelProvider, Payload
from threatwatch.models import EntityType, Verdict

BASE_URL = "https://checkurl.phishtank.com/checkurl/"


class PhishTankProvider(IntelProvider):
    name = "phishtank"
    supported_types = frozenset({EntityType.URL})
    api_key_env = "PHISHTANK_API_KEY"

    async def _lookup(self, entity_type: EntityType, value: str) -> Optional[Payload]:
        data = await self._request(
            "POST",
            BASE_URL,
            data={"url": base64.b64encode(value.encode()).decode(), "format": "json", "app_key": self.api_key},
            headers={"User-Agent": "phishtank/threatwatch"},
        )
        results = (data or {}).get("results")
        if not results:
            return None
        return {
            "in_database": bool(results.get("in_database")),
            "phish_id": results.get("phish_id"),
            "phish_detail_url": results.get("phish_detail_page") or results.get("phish_detail_url") or "",
            "verified": bool(results.get("verified")),
            "valid": bool(results.get("valid")),
        }

    def verdict(self, payload: Payload) -> Verdict:
        if payload.get("in_database") and payload.get("valid"):
            return "malicious"
        if payload.get("in_database"):
            return "suspicious"
        return "unknown"
