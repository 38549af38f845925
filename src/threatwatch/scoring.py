from __future__ import annotations

import logging
import re
import statistics
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from threatwatch.config import DEFAULT_WEIGHTS, SUB_SCORES, ScoringConfig
from threatwatch.enrichment import enrichment_risk
from threatwatch.models import Classification, Finding, IOCType, ThreatAssessment
from threatwatch.tiers import severity_for_score

log = logging.getLogger(__name__)

CRITICAL_KEYWORDS: Dict[str, int] = {
    "ransomware": 100,
    "zero-day": 100,
    "breach": 95,
    "credential dump": 95,
    "exfiltration": 90,
    "database leak": 90,
    "apt": 85,
    "backdoor": 80,
    "c2": 80,
    "malware": 75,
    "exploit": 75,
    "vulnerability": 70,
    "botnet": 70,
    "phishing": 65,
    "ddos": 60,
}

HIGH_KEYWORDS: Dict[str, int] = {
    "leaked": 60,
    "hacked": 60,
    "compromised": 60,
    "stolen": 55,
    "exposed": 55,
    "password": 50,
    "attack": 45,
    "threat": 40,
}

IOC_WEIGHTS: Dict[IOCType, int] = {
    IOCType.IP: 10,
    IOCType.DOMAIN: 8,
    IOCType.URL: 5,
    IOCType.HASH: 15,
    IOCType.EMAIL: 12,
}
DEFAULT_IOC_WEIGHT = 5

# first substring match wins
SOURCE_REPUTATION: Tuple[Tuple[str, int], ...] = (
    ("dark web", 95),
    ("github secret scanning", 90),
    ("pastebin", 80),
    ("telegram", 75),
    ("reddit", 65),
    ("clear web forum", 60),
    ("social media", 50),
)
DEFAULT_SOURCE_REPUTATION = 50

CONTENT_PATTERNS: Tuple[Tuple["re.Pattern[str]", int], ...] = (
    (re.compile(r"\b(?:username|user|login)\s*[:=].*?(?:password|pass|pwd)\s*[:=]", re.IGNORECASE), 30),
    (re.compile(r"(?:root|admin|sudo).*password", re.IGNORECASE), 20),
    (re.compile(r"\bAWS_?(?:SECRET_?)?ACCESS_?KEY|\bAKIA[0-9A-Z]{16}\b", re.IGNORECASE), 25),
    (re.compile(r"\bapi[_\s]?key", re.IGNORECASE), 15),
    (re.compile(r"\b(?:INSERT|UPDATE|DELETE)\s+(?:INTO|FROM)\b", re.IGNORECASE), 15),
    (re.compile(r"\bSELECT\b.*\bFROM\b.*\bWHERE\b", re.IGNORECASE), 10),
    (re.compile(r"\b(?:database|data|db|credential|combo)\s+(?:dump|leak)s?\b", re.IGNORECASE), 15),
    (re.compile(r"\bCVE-\d{4}-\d{4,}\b", re.IGNORECASE), 20),
    (re.compile(r"\b(?:0day|zero-day)\b", re.IGNORECASE), 25),
)
LONG_CONTENT_WORDS = 500

TEMPORAL_WINDOW = timedelta(hours=24)

RISK_FACTOR_LABELS: Tuple[Tuple[str, float, str], ...] = (
    ("keyword_criticality", 75, "High-criticality keywords detected"),
    ("ioc_volume", 70, "Large number of IOCs identified"),
    ("source_reputation", 80, "High-risk source (Dark Web/Pastebin)"),
    ("temporal_clustering", 50, "Part of active campaign (temporal clustering)"),
    ("content_analysis", 60, "Dangerous content patterns detected"),
    ("correlation", 40, "Correlated with previous threats"),
    ("enrichment_risk", 50, "Indicators flagged by threat intelligence"),
)


class ThreatScorer:
    """Weighted fusion of seven 0-100 signals into one threat score."""

    def __init__(self, config: Optional[ScoringConfig] = None) -> None:
        self.weights: Dict[str, float] = dict(config.weights) if config else dict(DEFAULT_WEIGHTS)
        self._rules: Dict[str, Callable[[Finding, Sequence[Finding]], float]] = {
            "keyword_criticality": lambda f, h: self.keyword_criticality(f),
            "ioc_volume": lambda f, h: self.ioc_volume(f),
            "source_reputation": lambda f, h: self.source_reputation(f),
            "temporal_clustering": self.temporal_clustering,
            "content_analysis": lambda f, h: self.content_analysis(f),
            "correlation": self.correlation,
            "enrichment_risk": lambda f, h: self.enrichment(f),
        }

    def score_finding(self, finding: Finding, history: Sequence[Finding] = ()) -> ThreatAssessment:
        history = [h for h in history if h.id != finding.id]
        subs: Dict[str, float] = {}
        for name in SUB_SCORES:
            try:
                subs[name] = round(max(0.0, min(100.0, float(self._rules[name](finding, history)))), 2)
            except Exception as e:
                log.warning("subscore_failed name=%s finding=%s error=%r", name, finding.id, e)
                subs[name] = 0.0

        composite = sum(self.weights.get(k, 0.0) * v for k, v in subs.items())
        composite = round(max(0.0, min(100.0, composite)), 2)
        spread = statistics.pstdev(subs.values())
        confidence = round(max(0.0, min(100.0, 100 - min(spread, 100) / 2)), 2)

        return ThreatAssessment(
            threat_score=composite,
            severity=severity_for_score(composite),
            confidence=confidence,
            risk_factors=risk_factors(subs),
            sub_scores=subs,
        )

    @staticmethod
    def keyword_criticality(finding: Finding) -> float:
        best = 0
        for kw in finding.keywords:
            k = kw.lower()
            for table in (CRITICAL_KEYWORDS, HIGH_KEYWORDS):
                for term, pts in table.items():
                    if term in k:
                        best = max(best, pts)
        return best

    @staticmethod
    def ioc_volume(finding: Finding) -> float:
        weighted = sum(len(values) * IOC_WEIGHTS.get(t, DEFAULT_IOC_WEIGHT) for t, values in finding.iocs.non_empty())
        return min(100, weighted * 2)

    @staticmethod
    def source_reputation(finding: Finding) -> float:
        source = finding.source.lower()
        for name, pts in SOURCE_REPUTATION:
            if name in source:
                return pts
        return DEFAULT_SOURCE_REPUTATION

    @staticmethod
    def temporal_clustering(finding: Finding, history: Sequence[Finding]) -> float:
        mine = {k.lower() for k in finding.keywords}
        if not mine:
            return 0
        start = finding.timestamp - TEMPORAL_WINDOW
        matches = 0
        for h in history:
            if start <= h.timestamp <= finding.timestamp and mine & {k.lower() for k in h.keywords}:
                matches += 1
        return min(100, matches * 15)

    @staticmethod
    def content_analysis(finding: Finding) -> float:
        text = finding.text
        score = sum(pts for pattern, pts in CONTENT_PATTERNS if pattern.search(text))
        if len(text.split()) > LONG_CONTENT_WORDS:
            score += 10
        return min(100, score)

    @staticmethod
    def correlation(finding: Finding, history: Sequence[Finding]) -> float:
        shared = 0
        for h in history:
            shared += sum(len(values) for values in finding.iocs.intersection(h.iocs).values())
        return min(100, shared * 10)

    @staticmethod
    def enrichment(finding: Finding) -> float:
        malicious = sum(1 for r in finding.reputation.values() if r.classification == Classification.MALICIOUS)
        return min(100.0, enrichment_risk(finding.enrichment) + 10 * malicious)


def risk_factors(sub_scores: Dict[str, float]) -> List[str]:
    return [label for name, threshold, label in RISK_FACTOR_LABELS if sub_scores.get(name, 0) >= threshold]
