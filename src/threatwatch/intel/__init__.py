from __future__ import annotations

from typing import Dict, List, Type

from threatwatch.config import EnrichmentConfig
from threatwatch.intel.abuseipdb import AbuseIPDBProvider
from threatwatch.intel.base import IntelProvider
from threatwatch.intel.greynoise import GreyNoiseProvider
from threatwatch.intel.mock import MockProvider
from threatwatch.intel.otx import OTXProvider
from threatwatch.intel.phishtank import PhishTankProvider
from threatwatch.intel.pulsedive import PulsediveProvider
from threatwatch.intel.ratelimit import FixedWindowRateLimiter, RateLimiter, SharedWindowRateLimiter
from threatwatch.intel.shodan import ShodanProvider
from threatwatch.intel.threatfox import ThreatFoxProvider
from threatwatch.intel.urlhaus import URLhausProvider
from threatwatch.intel.virustotal import VirusTotalProvider

ONLINE_PROVIDERS: Dict[str, Type[IntelProvider]] = {
    p.name: p
    for p in (
        VirusTotalProvider,
        OTXProvider,
        AbuseIPDBProvider,
        GreyNoiseProvider,
        URLhausProvider,
        ThreatFoxProvider,
        PhishTankProvider,
        ShodanProvider,
        PulsediveProvider,
    )
}


def _limiter(cfg: EnrichmentConfig, name: str, database: str) -> RateLimiter:
    p = cfg.provider(name)
    if cfg.shared_rate_limits:
        return SharedWindowRateLimiter(database, name, p.rate_limit, p.per_seconds)
    return FixedWindowRateLimiter(p.rate_limit, p.per_seconds)


def build_providers(cfg: EnrichmentConfig, database: str) -> List[IntelProvider]:
    """Offline mode uses only the mock; online mode every configured provider that is enabled."""
    if cfg.mode == "offline":
        return [MockProvider(limiter=_limiter(cfg, "mock", database))] if cfg.provider("mock").enabled else []

    providers: List[IntelProvider] = []
    for name, cls in ONLINE_PROVIDERS.items():
        if not cfg.provider(name).enabled:
            continue
        provider = cls(timeout_seconds=cfg.timeout_seconds, limiter=_limiter(cfg, name, database))
        if provider.enabled():
            providers.append(provider)
    return providers


__all__ = [
    "AbuseIPDBProvider",
    "GreyNoiseProvider",
    "IntelProvider",
    "MockProvider",
    "OTXProvider",
    "PhishTankProvider",
    "PulsediveProvider",
    "ShodanProvider",
    "ThreatFoxProvider",
    "URLhausProvider",
    "VirusTotalProvider",
    "build_providers",
]
