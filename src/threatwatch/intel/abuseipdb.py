from __future__ import annotations

from typing import Optional, Set

from threatwatch.intel.base import IntelProvider, Payload
from threatwatch.models import EntityType, Verdict

BASE_URL = "https://api.abuseipdb.com/api/v2"


class AbuseIPDBProvider(IntelProvider):
    name = "abuseipdb"
    supported_types = frozenset({EntityType.IP})
    api_key_env = "ABUSEIPDB_API_KEY"

    async def _lookup(self, entity_type: EntityType, value: str) -> Optional[Payload]:
        data = await self._request(
            "GET",
            f"{BASE_URL}/check",
            params={"ipAddress": value, "maxAgeInDays": 90},
            headers={"Key": self.api_key, "Accept": "application/json"},
        )
        d = (data or {}).get("data")
        if not d:
            return None
        return {
            "abuse_confidence_score": int(d.get("abuseConfidenceScore", 0)),
            "usage_type": d.get("usageType") or "Unknown",
            "isp": d.get("isp") or "Unknown",
            "domain": d.get("domain") or "",
            "country_code": d.get("countryCode") or "",
            "is_whitelisted": bool(d.get("isWhitelisted")),
            "is_tor": bool(d.get("isTor")),
            "total_reports": int(d.get("totalReports", 0)),
            "last_reported_at": d.get("lastReportedAt"),
        }

    def verdict(self, payload: Payload) -> Verdict:
        if payload.get("is_whitelisted"):
            return "benign"
        score = int(payload.get("abuse_confidence_score", 0))
        if score >= 75:
            return "malicious"
        if score >= 25:
            return "suspicious"
        return "unknown"

    def hints(self, payload: Payload) -> Set[str]:
        out = super().hints(payload)
        if payload.get("is_tor"):
            out.add("tor_exit_node")
        usage = str(payload.get("usage_type", "")).lower()
        if "hosting" in usage or "data center" in usage:
            out.add("cloud_provider")
        if "vpn" in usage:
            out.add("vpn")
        return out
