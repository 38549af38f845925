from __future__ import annotations

import re
from typing import Optional, Set

from threatwatch.intel.base import IntelProvider, Payload
from threatwatch.models import EntityType, Verdict

COMMUNITY_URL = "https://api.greynoise.io/v3/community"


class GreyNoiseProvider(IntelProvider):
    """GreyNoise community lookup; the key is optional and only raises the quota."""

    name = "greynoise"
    supported_types = frozenset({EntityType.IP})
    api_key_env = "GREYNOISE_API_KEY"
    requires_key = False

    async def _lookup(self, entity_type: EntityType, value: str) -> Optional[Payload]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["key"] = self.api_key
        data = await self._request("GET", f"{COMMUNITY_URL}/{value}", headers=headers)
        if not data:
            return None
        return {
            "noise": bool(data.get("noise")),
            "riot": bool(data.get("riot")),
            "classification": data.get("classification") or "unknown",
            "name": data.get("name") or "",
            "link": data.get("link") or "",
            "last_seen": data.get("last_seen") or "",
        }

    def verdict(self, payload: Payload) -> Verdict:
        classification = payload.get("classification")
        if classification == "malicious":
            return "malicious"
        if classification == "benign" or payload.get("riot"):
            return "benign"
        if payload.get("noise"):
            return "suspicious"
        return "unknown"

    def hints(self, payload: Payload) -> Set[str]:
        out = super().hints(payload)
        name = str(payload.get("name", "")).lower()
        if re.search(r"\btor\b", name):
            out.add("tor_exit_node")
        if "vpn" in name:
            out.add("vpn")
        if payload.get("riot"):
            out.add("cloud_provider")
        return out
