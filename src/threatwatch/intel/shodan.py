from __future__ import annotations

from typing import Optional, Set

from threatwatch.intel.base import IntelProvider, Payload
from threatwatch.models import EntityType, Verdict

BASE_URL = "https://api.shodan.io"


class ShodanProvider(IntelProvider):
    """Open ports, banners and known CVEs for a host."""

    name = "shodan"
    supported_types = frozenset({EntityType.IP})
    api_key_env = "SHODAN_API_KEY"

    async def _lookup(self, entity_type: EntityType, value: str) -> Optional[Payload]:
        data = await self._request("GET", f"{BASE_URL}/shodan/host/{value}", params={"key": self.api_key})
        if not data:
            return None
        ports, services, vulns = [], [], []
        for banner in data.get("data") or []:
            if banner.get("port") is not None and banner["port"] not in ports:
                ports.append(banner["port"])
            if banner.get("product") and banner["product"] not in services:
                services.append(banner["product"])
            for cve in banner.get("vulns") or {}:
                if cve not in vulns:
                    vulns.append(cve)
        return {
            "org": data.get("org") or "Unknown",
            "asn": data.get("asn") or "",
            "isp": data.get("isp") or "Unknown",
            "country_code": data.get("country_code") or "",
            "city": data.get("city") or "",
            "ports": sorted(ports),
            "services": services,
            "vulns": sorted(vulns),
            "hostnames": data.get("hostnames") or [],
            "tags": data.get("tags") or [],
            "os": data.get("os"),
            "last_update": data.get("last_update"),
        }

    def verdict(self, payload: Payload) -> Verdict:
        if "malware" in payload.get("tags", []) or "c2" in payload.get("tags", []):
            return "malicious"
        if payload.get("vulns"):
            return "suspicious"
        return "unknown"

    def hints(self, payload: Payload) -> Set[str]:
        out = super().hints(payload)
        tags = payload.get("tags", [])
        if "tor" in tags:
            out.add("tor_exit_node")
        if "vpn" in tags:
            out.add("vpn")
        if "cloud" in tags:
            out.add("cloud_provider")
        return out
