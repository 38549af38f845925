from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

Verdict = Literal["benign", "unknown", "suspicious", "malicious"]


class IOCType(str, Enum):
    IP = "ip"
    DOMAIN = "domain"
    URL = "url"
    EMAIL = "email"
    HASH = "hash"
    CVE = "cve"
    CRYPTO_ADDRESS = "crypto_address"
    WINDOWS_ARTIFACT = "windows_artifact"

    @property
    def plural(self) -> str:
        return _PLURALS[self]

    @classmethod
    def from_plural(cls, key: str) -> "IOCType":
        for t, p in _PLURALS.items():
            if p == key:
                return t
        raise ValueError(f"unknown IOC collection key: {key}")


_PLURALS: Dict[IOCType, str] = {
    IOCType.IP: "ips",
    IOCType.DOMAIN: "domains",
    IOCType.URL: "urls",
    IOCType.EMAIL: "emails",
    IOCType.HASH: "hashes",
    IOCType.CVE: "cves",
    IOCType.CRYPTO_ADDRESS: "crypto_addresses",
    IOCType.WINDOWS_ARTIFACT: "windows_artifacts",
}


class EntityType(str, Enum):
    IP = "ip"
    DOMAIN = "domain"
    URL = "url"
    HASH = "hash"

    @property
    def ioc_type(self) -> IOCType:
        return IOCType(self.value)


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Classification(str, Enum):
    TRUSTED = "trusted"
    LIKELY_SAFE = "likely_safe"
    UNKNOWN = "unknown"
    SUSPICIOUS = "suspicious"
    MALICIOUS = "malicious"


class HashKind(str, Enum):
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"


class ProviderStatus(str, Enum):
    OK = "ok"
    NO_DATA = "no_data"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"
    TIMEOUT = "timeout"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def entity_key(entity_type: EntityType, value: str) -> str:
    return f"{entity_type.value}:{value}"


class IOCSet(BaseModel):
    """Indicators found in one finding, one unique list per IOC type."""

    ips: List[str] = Field(default_factory=list)
    domains: List[str] = Field(default_factory=list)
    urls: List[str] = Field(default_factory=list)
    emails: List[str] = Field(default_factory=list)
    hashes: List[str] = Field(default_factory=list)
    cves: List[str] = Field(default_factory=list)
    crypto_addresses: List[str] = Field(default_factory=list)
    windows_artifacts: List[str] = Field(default_factory=list)

    @field_validator("*", mode="after")
    @classmethod
    def _unique(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(v))

    def get(self, ioc_type: IOCType) -> List[str]:
        return getattr(self, ioc_type.plural)

    def non_empty(self) -> List[Tuple[IOCType, List[str]]]:
        return [(t, self.get(t)) for t in IOCType if self.get(t)]

    def total(self) -> int:
        return sum(len(v) for _, v in self.non_empty())

    def is_empty(self) -> bool:
        return self.total() == 0

    def to_dict(self) -> Dict[str, List[str]]:
        return {t.plural: list(v) for t, v in self.non_empty()}

    def intersection(self, other: "IOCSet") -> Dict[IOCType, List[str]]:
        shared: Dict[IOCType, List[str]] = {}
        for t, values in self.non_empty():
            theirs = set(other.get(t))
            common = [v for v in values if v in theirs]
            if common:
                shared[t] = common
        return shared


class CollectorRecord(BaseModel):
    source: str
    title: str
    url: Optional[str] = None
    snippet: str = ""
    keywords: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp", mode="after")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class MitreTechnique(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    tactic: str


class ReputationResult(BaseModel):
    score: int = Field(ge=0, le=100)
    classification: Classification
    factors: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Entity(BaseModel):
    entity_type: EntityType
    value: str
    score: int = Field(default=50, ge=0, le=100)
    classification: Classification = Classification.UNKNOWN
    occurrences: int = 0
    malicious_count: int = 0
    first_seen: datetime = Field(default_factory=utcnow)
    last_seen: datetime = Field(default_factory=utcnow)
    factors: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_result(self) -> ReputationResult:
        return ReputationResult(
            score=self.score, classification=self.classification, factors=list(self.factors), metadata=dict(self.metadata)
        )


class EnrichmentRecord(BaseModel):
    entity_type: EntityType
    value: str
    payloads: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    fetched_at: datetime = Field(default_factory=utcnow)
    ttl_seconds: int = 86400
    # per-call bookkeeping, never persisted
    outcomes: Dict[str, ProviderStatus] = Field(default_factory=dict, exclude=True)
    cached: bool = Field(default=False, exclude=True)

    @property
    def key(self) -> str:
        return entity_key(self.entity_type, self.value)

    def is_fresh(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now - _as_utc(self.fetched_at) < timedelta(seconds=self.ttl_seconds)


class ThreatAssessment(BaseModel):
    threat_score: float = Field(ge=0, le=100)
    severity: Severity
    confidence: float = Field(ge=0, le=100)
    risk_factors: List[str] = Field(default_factory=list)
    sub_scores: Dict[str, float] = Field(default_factory=dict)


class Finding(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = Field(default_factory=utcnow)
    source: str
    title: str
    url: Optional[str] = None
    snippet: str = ""
    keywords: List[str] = Field(default_factory=list)
    iocs: IOCSet = Field(default_factory=IOCSet)
    # entity type -> indicator value -> provider name -> payload
    enrichment: Dict[str, Dict[str, Dict[str, Any]]] = Field(default_factory=dict)
    reputation: Dict[str, ReputationResult] = Field(default_factory=dict)
    mitre_techniques: List[MitreTechnique] = Field(default_factory=list)
    threat_score: float = 0.0
    severity: Severity = Severity.LOW
    confidence: float = 0.0
    risk_factors: List[str] = Field(default_factory=list)
    sub_scores: Dict[str, float] = Field(default_factory=dict)
    status: Literal["new", "scored"] = "new"
    correlated_with: List[str] = Field(default_factory=list)

    @field_validator("timestamp", mode="after")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @field_validator("keywords", mode="after")
    @classmethod
    def _unique_keywords(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(k.strip() for k in v if k and k.strip()))

    @classmethod
    def from_record(cls, record: CollectorRecord) -> "Finding":
        return cls(
            timestamp=record.timestamp,
            source=record.source,
            title=record.title,
            url=record.url,
            snippet=record.snippet,
            keywords=record.keywords,
        )

    @property
    def text(self) -> str:
        return f"{self.title}\n{self.snippet}"

    def apply(self, assessment: ThreatAssessment) -> None:
        self.threat_score = assessment.threat_score
        self.severity = assessment.severity
        self.confidence = assessment.confidence
        self.risk_factors = list(assessment.risk_factors)
        self.sub_scores = dict(assessment.sub_scores)
        self.status = "scored"


class CorrelationEdge(BaseModel):
    finding_id_a: str
    finding_id_b: str
    score: float = Field(ge=0, le=1)
    shared_iocs: Dict[str, List[str]] = Field(default_factory=dict)
    shared_keywords: List[str] = Field(default_factory=list)
    mitre_techniques: List[MitreTechnique] = Field(default_factory=list)
