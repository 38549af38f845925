from __future__ import annotations

import math
from typing import Any, Dict, Literal, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from threatwatch.errors import ConfigError
from threatwatch.models import EntityType

SUB_SCORES: Tuple[str, ...] = (
    "keyword_criticality",
    "ioc_volume",
    "source_reputation",
    "temporal_clustering",
    "content_analysis",
    "correlation",
    "enrichment_risk",
)

DEFAULT_WEIGHTS: Dict[str, float] = {
    "keyword_criticality": 0.40,
    "ioc_volume": 0.25,
    "source_reputation": 0.10,
    "temporal_clustering": 0.05,
    "content_analysis": 0.05,
    "correlation": 0.05,
    "enrichment_risk": 0.10,
}


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class InputConfig(_Frozen):
    findings_jsonl: str = "data/findings.jsonl"


class OutputConfig(_Frozen):
    dir: str = "output"
    scored_json: str = "scored_findings.json"
    findings_csv: str = "findings.csv"
    correlations_json: str = "correlations.json"
    summary_md: str = "summary.md"


class LoggingConfig(_Frozen):
    level: str = "INFO"
    file: str = "output/pipeline.log"


class ProviderConfig(_Frozen):
    enabled: bool = True
    rate_limit: int = Field(default=10, ge=1)
    per_seconds: int = Field(default=60, ge=1)


def _default_providers() -> Dict[str, ProviderConfig]:
    # free-tier quotas
    return {
        "virustotal": ProviderConfig(rate_limit=4, per_seconds=60),
        "otx": ProviderConfig(rate_limit=10, per_seconds=60),
        "abuseipdb": ProviderConfig(rate_limit=1000, per_seconds=86400),
        "greynoise": ProviderConfig(rate_limit=50, per_seconds=60),
        "urlhaus": ProviderConfig(rate_limit=60, per_seconds=60),
        "threatfox": ProviderConfig(rate_limit=60, per_seconds=60),
        "phishtank": ProviderConfig(rate_limit=10, per_seconds=60),
        "shodan": ProviderConfig(rate_limit=1, per_seconds=1),
        "pulsedive": ProviderConfig(rate_limit=30, per_seconds=60),
        "mock": ProviderConfig(rate_limit=1000, per_seconds=60),
    }


def _default_type_limits() -> Dict[EntityType, int]:
    return {EntityType.IP: 3, EntityType.DOMAIN: 3, EntityType.URL: 2, EntityType.HASH: 2}


class EnrichmentConfig(_Frozen):
    mode: Literal["offline", "online"] = "offline"
    cache_ttl_hours: float = Field(default=24, gt=0)
    timeout_seconds: float = Field(default=12, gt=0)
    deadline_seconds: float = Field(default=30, gt=0)
    retry_attempts: int = Field(default=2, ge=1, le=5)
    retry_delay_seconds: float = Field(default=2.0, ge=0)
    shared_rate_limits: bool = False
    per_type_limits: Dict[EntityType, int] = Field(default_factory=_default_type_limits)
    providers: Dict[str, ProviderConfig] = Field(default_factory=_default_providers)

    @field_validator("providers", mode="before")
    @classmethod
    def _merge_provider_defaults(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        merged: Dict[str, Any] = {k: p.model_dump() for k, p in _default_providers().items()}
        for name, override in v.items():
            merged[name] = {**merged.get(name, {}), **(override or {})}
        return merged

    def provider(self, name: str) -> ProviderConfig:
        return self.providers.get(name, ProviderConfig())


class ScoringConfig(_Frozen):
    weights: Dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_WEIGHTS))

    @field_validator("weights", mode="after")
    @classmethod
    def _check_weights(cls, v: Dict[str, float]) -> Dict[str, float]:
        unknown = set(v) - set(SUB_SCORES)
        if unknown:
            raise ValueError(f"unknown scoring weights: {sorted(unknown)}")
        weights = {k: float(v.get(k, 0.0)) for k in SUB_SCORES}
        if any(w < 0 for w in weights.values()):
            raise ValueError("scoring weights must be non-negative")
        if not math.isclose(sum(weights.values()), 1.0, abs_tol=1e-6):
            raise ValueError(f"scoring weights must sum to 1, got {sum(weights.values()):.4f}")
        return weights


class CorrelationConfig(_Frozen):
    window_hours: float = Field(default=24, gt=0)
    threshold: float = Field(default=0.3, ge=0, le=1)
    max_window: int = Field(default=500, ge=2)


class Settings(_Frozen):
    input: InputConfig = Field(default_factory=InputConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: str = "data/threatwatch.db"
    keywords: Tuple[str, ...] = ()
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    correlation: CorrelationConfig = Field(default_factory=CorrelationConfig)
    mitre_file: Optional[str] = None
    store_write_attempts: int = Field(default=3, ge=1)


def load_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at top level")
    return data


def load_settings(path: str) -> Settings:
    try:
        return Settings.model_validate(load_yaml(path))
    except ValidationError as e:
        raise ConfigError(f"invalid configuration in {path}: {e}") from e
