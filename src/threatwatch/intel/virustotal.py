from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone
from typing import Optional, Set

from threatwatch.intel.base import IntelProvider, Payload
from threatwatch.models import EntityType, Verdict

BASE_URL = "https://www.virustotal.com/api/v3"

# AS owners that indicate shared cloud hosting rather than a dedicated host
CLOUD_OWNERS = ("amazon", "google", "microsoft", "digitalocean", "ovh", "hetzner", "linode", "akamai", "cloudflare")


def url_id(url: str) -> str:
    return base64.urlsafe_b64encode(url.encode()).decode().rstrip("=")


class VirusTotalProvider(IntelProvider):
    name = "virustotal"
    supported_types = frozenset({EntityType.IP, EntityType.DOMAIN, EntityType.URL, EntityType.HASH})
    api_key_env = "VT_API_KEY"

    async def _lookup(self, entity_type: EntityType, value: str) -> Optional[Payload]:
        if entity_type == EntityType.IP:
            url = f"{BASE_URL}/ip_addresses/{value}"
        elif entity_type == EntityType.DOMAIN:
            url = f"{BASE_URL}/domains/{value}"
        elif entity_type == EntityType.URL:
            url = f"{BASE_URL}/urls/{url_id(value)}"
        else:
            url = f"{BASE_URL}/files/{value}"

        data = await self._request("GET", url, headers={"x-apikey": self.api_key})
        if not data:
            return None

        attrs = data.get("data", {}).get("attributes", {}) or {}
        stats = attrs.get("last_analysis_stats", {}) or {}
        payload: Payload = {
            "malicious": int(stats.get("malicious", 0)),
            "suspicious": int(stats.get("suspicious", 0)),
            "harmless": int(stats.get("harmless", 0)),
            "undetected": int(stats.get("undetected", 0)),
            "reputation": attrs.get("reputation", 0),
        }
        if entity_type == EntityType.IP:
            payload.update(country=attrs.get("country", ""), asn=attrs.get("asn"), as_owner=attrs.get("as_owner", ""))
        elif entity_type == EntityType.DOMAIN:
            payload.update(categories=attrs.get("categories", {}), creation_date=attrs.get("creation_date"))
        elif entity_type == EntityType.URL:
            payload.update(categories=attrs.get("categories", {}), threat_names=attrs.get("threat_names", []))
        else:
            threat = attrs.get("popular_threat_classification", {}) or {}
            payload.update(
                file_type=attrs.get("type_description", ""),
                file_size=attrs.get("size", 0),
                tags=attrs.get("tags", []),
                threat_label=threat.get("suggested_threat_label", ""),
            )
        return payload

    def verdict(self, payload: Payload) -> Verdict:
        malicious = int(payload.get("malicious", 0))
        suspicious = int(payload.get("suspicious", 0))
        if malicious >= 5:
            return "malicious"
        if malicious > 0 or suspicious > 0:
            return "suspicious"
        if int(payload.get("harmless", 0)) > 0:
            return "benign"
        return "unknown"

    def hints(self, payload: Payload) -> Set[str]:
        out = super().hints(payload)
        owner = str(payload.get("as_owner") or "").lower()
        if any(c in owner for c in CLOUD_OWNERS):
            out.add("cloud_provider")
        created = payload.get("creation_date")
        if isinstance(created, (int, float)) and created > 0:
            age = datetime.now(timezone.utc) - datetime.fromtimestamp(created, tz=timezone.utc)
            if age < timedelta(days=30):
                out.add("recently_registered")
        return out
