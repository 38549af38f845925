"""
Per-indicator enrichment across every capable intelligence provider.

``EnrichmentOrchestrator.enrich`` never raises for provider trouble: a
provider that is rate limited, errors out or misses the per-entity deadline
simply contributes no payload, and its outcome is recorded on the returned
record.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import httpx

from threatwatch.config import EnrichmentConfig
from threatwatch.errors import StorageError
from threatwatch.intel.base import IntelProvider, Payload
from threatwatch.intel.retry import retry_async
from threatwatch.models import EnrichmentRecord, EntityType, IOCSet, ProviderStatus, entity_key, utcnow
from threatwatch.storage.cache_sqlite import SQLiteCache

log = logging.getLogger(__name__)

EnrichmentMap = Dict[str, Dict[str, Dict[str, Payload]]]


class EnrichmentOrchestrator:
    def __init__(
        self,
        providers: Iterable[IntelProvider],
        cache: Optional[SQLiteCache] = None,
        deadline_seconds: float = 30,
        retry_attempts: int = 2,
        retry_delay_seconds: float = 2.0,
        per_type_limits: Optional[Dict[EntityType, int]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.providers = list(providers)
        self.cache = cache
        self.deadline_seconds = deadline_seconds
        self.retry_attempts = retry_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self.per_type_limits = dict(per_type_limits or {})
        self._clock = clock
        self._by_name = {p.name: p for p in self.providers}
        # capability index, fixed for the orchestrator's lifetime
        self._by_type: Dict[EntityType, List[IntelProvider]] = {
            t: [p for p in self.providers if p.enabled() and p.supports(t)] for t in EntityType
        }
        self._inflight: Dict[str, "asyncio.Task[EnrichmentRecord]"] = {}

    @classmethod
    def from_config(
        cls, cfg: EnrichmentConfig, providers: Iterable[IntelProvider], cache: Optional[SQLiteCache]
    ) -> "EnrichmentOrchestrator":
        return cls(
            providers,
            cache=cache,
            deadline_seconds=cfg.deadline_seconds,
            retry_attempts=cfg.retry_attempts,
            retry_delay_seconds=cfg.retry_delay_seconds,
            per_type_limits=cfg.per_type_limits,
        )

    def providers_for(self, entity_type: EntityType) -> List[IntelProvider]:
        return list(self._by_type[entity_type])

    @property
    def ttl_seconds(self) -> int:
        return self.cache.ttl_seconds if self.cache is not None else 86400

    async def enrich(self, entity_type: EntityType, value: str) -> EnrichmentRecord:
        key = entity_key(entity_type, value)
        cached = self._cache_get(entity_type, value)
        if cached is not None:
            log.debug("cache_hit key=%s", key)
            return cached

        # no await between the cache miss and the in-flight registration
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(entity_type, value))
            self._inflight[key] = task
            task.add_done_callback(lambda _t: self._inflight.pop(key, None))
        else:
            log.debug("join_inflight key=%s", key)
        return await asyncio.shield(task)

    async def enrich_iocs(self, iocs: IOCSet) -> List[EnrichmentRecord]:
        """Enrich the first N indicators of each enrichable type, N from ``per_type_limits``."""
        jobs = []
        for t in EntityType:
            values = iocs.get(t.ioc_type)
            limit = self.per_type_limits.get(t)
            if limit is not None:
                values = values[:limit]
            jobs.extend(self.enrich(t, v) for v in values)
        if not jobs:
            return []
        return list(await asyncio.gather(*jobs))

    def derive_context(self, payloads: Dict[str, Payload]) -> Dict[str, bool]:
        """Reputation hints (``malicious``, ``tor_exit_node``, ...) implied by provider payloads."""
        flags: Dict[str, bool] = {}
        for name, payload in payloads.items():
            provider = self._by_name.get(name)
            if provider is None:
                continue
            try:
                for hint in provider.hints(payload):
                    flags[hint] = True
            except Exception as e:
                log.warning("hint_failed provider=%s error=%s", name, e)
        return flags

    def _cache_get(self, entity_type: EntityType, value: str) -> Optional[EnrichmentRecord]:
        if self.cache is None:
            return None
        try:
            return self.cache.get(entity_type, value)
        except StorageError as e:
            log.warning("cache_read_failed key=%s error=%s", entity_key(entity_type, value), e)
            return None

    def _cache_set(self, record: EnrichmentRecord) -> None:
        if self.cache is None:
            return
        try:
            self.cache.set(record)
        except StorageError as e:
            log.warning("cache_write_failed key=%s error=%s", record.key, e)

    async def _fetch(self, entity_type: EntityType, value: str) -> EnrichmentRecord:
        record = EnrichmentRecord(
            entity_type=entity_type, value=value, fetched_at=self._clock(), ttl_seconds=self.ttl_seconds
        )

        calls: Dict[str, "asyncio.Task[Tuple[ProviderStatus, Optional[Payload]]]"] = {}
        for p in self._by_type[entity_type]:
            if p.limiter is not None and not p.limiter.try_acquire():
                record.outcomes[p.name] = ProviderStatus.RATE_LIMITED
                log.warning("provider_skipped reason=rate_limit provider=%s key=%s", p.name, record.key)
                continue
            calls[p.name] = asyncio.ensure_future(self._call(p, entity_type, value))

        if calls:
            try:
                _done, pending = await asyncio.wait(calls.values(), timeout=self.deadline_seconds)
            except asyncio.CancelledError:
                for t in calls.values():
                    t.cancel()
                raise
            for name, t in calls.items():
                if t in pending:
                    t.cancel()
                    record.outcomes[name] = ProviderStatus.TIMEOUT
                    log.warning("provider_deadline provider=%s key=%s", name, record.key)
                    continue
                status, payload = t.result()
                record.outcomes[name] = status
                if payload is not None:
                    record.payloads[name] = payload
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if self._cacheable(record):
            self._cache_set(record)
        log.info(
            "enriched key=%s providers=%d payloads=%d outcomes=%s",
            record.key,
            len(record.outcomes),
            len(record.payloads),
            ",".join(f"{k}:{v.value}" for k, v in record.outcomes.items()),
        )
        return record

    async def _call(
        self, provider: IntelProvider, entity_type: EntityType, value: str
    ) -> Tuple[ProviderStatus, Optional[Payload]]:
        key = entity_key(entity_type, value)
        try:
            payload = await retry_async(
                lambda: provider.lookup(entity_type, value),
                attempts=self.retry_attempts,
                delay=self.retry_delay_seconds,
            )
        except httpx.TimeoutException as e:
            log.warning("provider_timeout provider=%s key=%s error=%s", provider.name, key, e)
            return ProviderStatus.TIMEOUT, None
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 429:
                log.warning("provider_skipped reason=upstream_429 provider=%s key=%s", provider.name, key)
                return ProviderStatus.RATE_LIMITED, None
            log.warning("provider_error provider=%s key=%s status=%s", provider.name, key, e.response.status_code)
            return ProviderStatus.ERROR, None
        except Exception as e:
            log.warning("provider_error provider=%s key=%s error=%r", provider.name, key, e)
            return ProviderStatus.ERROR, None

        if not payload:
            return ProviderStatus.NO_DATA, None
        return ProviderStatus.OK, payload

    @staticmethod
    def _cacheable(record: EnrichmentRecord) -> bool:
        if record.payloads:
            return True
        # a clean "nothing known" from every provider is worth remembering
        return bool(record.outcomes) and all(s == ProviderStatus.NO_DATA for s in record.outcomes.values())


def enrichment_map(records: Iterable[EnrichmentRecord]) -> EnrichmentMap:
    """Finding-shaped view: entity type -> value -> provider -> payload, payload-less records omitted."""
    out: EnrichmentMap = {}
    for r in records:
        if r.payloads:
            out.setdefault(r.entity_type.value, {})[r.value] = dict(r.payloads)
    return out


def _num(payload: Optional[Dict[str, Any]], field: str) -> float:
    if not payload:
        return 0.0
    try:
        return float(payload.get(field) or 0)
    except (TypeError, ValueError):
        return 0.0


def _mock_points(payload: Optional[Dict[str, Any]]) -> float:
    if not payload:
        return 0.0
    return {"malicious": 25.0, "suspicious": 10.0}.get(payload.get("verdict"), 0.0)


def enrichment_risk(enrichment: EnrichmentMap) -> float:
    """0-100 risk contributed by provider findings on a finding's indicators."""
    score = 0.0

    for data in enrichment.get(EntityType.IP.value, {}).values():
        score += min(_num(data.get("abuseipdb"), "abuse_confidence_score") / 2, 25)
        score += min(_num(data.get("virustotal"), "malicious") * 5, 15)
        score += min(_num(data.get("otx"), "pulse_count") * 2, 10)
        if (data.get("greynoise") or {}).get("classification") == "malicious":
            score += 10
        score += _mock_points(data.get("mock"))

    for data in enrichment.get(EntityType.DOMAIN.value, {}).values():
        score += min(_num(data.get("virustotal"), "malicious") * 5, 15)
        score += min(_num(data.get("otx"), "pulse_count") * 2, 10)
        if _num(data.get("urlhaus"), "url_count") > 0:
            score += 15
        score += _mock_points(data.get("mock"))

    for data in enrichment.get(EntityType.URL.value, {}).values():
        score += min(_num(data.get("virustotal"), "malicious") * 5, 15)
        if (data.get("phishtank") or {}).get("in_database"):
            score += 20
        if (data.get("urlhaus") or {}).get("url_status") == "online":
            score += 15
        score += _mock_points(data.get("mock"))

    for data in enrichment.get(EntityType.HASH.value, {}).values():
        score += min(_num(data.get("virustotal"), "malicious") * 3, 20)
        score += min(_num(data.get("threatfox"), "confidence_level") / 2, 15)
        if (data.get("urlhaus") or {}).get("signature"):
            score += 10
        score += _mock_points(data.get("mock"))

    return min(score, 100.0)
