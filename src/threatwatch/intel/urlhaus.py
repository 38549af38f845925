from __future__ import annotations

from typing import Optional

from threatwatch.intel.base import IntelProvider, Payload
from threatwatch.models import EntityType, HashKind, Verdict
from threatwatch.normalize import hash_kind

BASE_URL = "https://urlhaus-api.abuse.ch/v1"


class URLhausProvider(IntelProvider):
    name = "urlhaus"
    supported_types = frozenset({EntityType.DOMAIN, EntityType.URL, EntityType.HASH})
    api_key_env = "URLHAUS_AUTH_KEY"
    requires_key = False

    async def _post(self, endpoint: str, data: dict) -> Optional[Payload]:
        headers = {"Auth-Key": self.api_key} if self.api_key else {}
        resp = await self._request("POST", f"{BASE_URL}/{endpoint}/", data=data, headers=headers)
        if not resp or resp.get("query_status") != "ok":
            return None
        return resp

    async def _lookup(self, entity_type: EntityType, value: str) -> Optional[Payload]:
        if entity_type == EntityType.URL:
            r = await self._post("url", {"url": value})
            if r is None:
                return None
            families = {p.get("signature") for p in r.get("payloads") or [] if p.get("signature")}
            return {
                "url_status": r.get("url_status", ""),
                "threat": r.get("threat", ""),
                "tags": r.get("tags") or [],
                "urlhaus_reference": r.get("urlhaus_reference", ""),
                "date_added": r.get("date_added", ""),
                "malware_families": sorted(families),
            }

        if entity_type == EntityType.DOMAIN:
            r = await self._post("host", {"host": value})
            if r is None:
                return None
            return {
                "firstseen": r.get("firstseen", ""),
                "url_count": int(r.get("url_count") or 0),
                "blacklists": r.get("blacklists") or {},
            }

        kind = hash_kind(value)
        if kind is None or kind == HashKind.SHA1:
            # payload endpoint only indexes md5 and sha256
            return None
        r = await self._post("payload", {f"{kind.value}_hash": value})
        if r is None:
            return None
        return {
            "file_type": r.get("file_type", ""),
            "file_size": int(r.get("file_size") or 0),
            "signature": r.get("signature") or "",
            "firstseen": r.get("firstseen", ""),
            "lastseen": r.get("lastseen", ""),
            "url_count": int(r.get("url_count") or 0),
        }

    def verdict(self, payload: Payload) -> Verdict:
        if payload.get("url_status") == "online" or payload.get("signature"):
            return "malicious"
        if payload.get("url_status") or int(payload.get("url_count", 0)) > 0:
            return "suspicious"
        return "unknown"
