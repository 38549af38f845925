from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from threatwatch.models import Classification, Entity, EntityType, ReputationResult, entity_key, utcnow
from threatwatch.normalize import hash_kind, is_public_ip, is_valid_domain, is_valid_hash, is_valid_ip, normalize_domain
from threatwatch.storage.reputation_store import ReputationStore
from threatwatch.tiers import classification_for_score

log = logging.getLogger(__name__)

BASELINE = 50

SUSPICIOUS_TLDS = frozenset({"xyz", "top", "tk", "ml", "ga", "cf", "gq", "win", "loan"})
PHISHING_WORDS = ("login", "verify", "secure", "account", "banking", "paypal", "update")
SUSPICIOUS_PATHS = ("/admin", "/login", "/verify", "/update", "/secure")
_DIGIT_RUN_RE = re.compile(r"\d{4,}")


@dataclass
class _Tally:
    score: int = BASELINE
    factors: List[str] = field(default_factory=list)

    def add(self, delta: int, factor: str) -> None:
        self.score += delta
        self.factors.append(factor)

    def zero(self, factor: str) -> None:
        self.score = 0
        self.factors.append(factor)


Rule = Callable[[str, Mapping[str, Any], Optional[Entity], _Tally], None]


def _ip_private(v, ctx, hist, t):
    if not is_public_ip(v):
        t.add(-40, "private_ip")


def _flag(name: str, delta: int, factor: str) -> Rule:
    def rule(v, ctx, hist, t):
        if ctx.get(name):
            t.add(delta, factor)

    rule.__name__ = f"flag_{name}"
    return rule


def _domain_tld(v, ctx, hist, t):
    if v.rsplit(".", 1)[-1] in SUSPICIOUS_TLDS:
        t.add(-20, "suspicious_tld")


def _domain_digits(v, ctx, hist, t):
    if _DIGIT_RUN_RE.search(v):
        t.add(-15, "excessive_numbers")


def _domain_length(v, ctx, hist, t):
    if len(v) > 50:
        t.add(-10, "long_domain")


def _domain_phishing_word(v, ctx, hist, t):
    for word in PHISHING_WORDS:
        if word in v:
            t.add(-10, f"suspicious_keyword_{word}")
            return


def _bad_history(v, ctx, hist, t):
    if hist is None:
        return
    if hist.malicious_count > 0:
        t.add(-5 * hist.malicious_count, "bad_history")
    if hist.classification == Classification.MALICIOUS:
        t.add(-5, "prior_malicious")


def _hash_flags(v, ctx, hist, t):
    if ctx.get("malicious"):
        t.zero("known_malware")
    if ctx.get("suspicious"):
        t.add(-30, "suspicious_behavior")


def _hash_history(v, ctx, hist, t):
    if hist is not None and hist.malicious_count > 0:
        t.zero("malware_history")


IP_RULES: Tuple[Rule, ...] = (
    _ip_private,
    _flag("malicious", -30, "flagged_malicious"),
    _flag("tor_exit_node", -25, "tor_exit"),
    _flag("vpn", -15, "vpn"),
    _flag("cloud_provider", -5, "cloud_hosting"),
)

DOMAIN_RULES: Tuple[Rule, ...] = (
    _domain_tld,
    _domain_digits,
    _domain_length,
    _domain_phishing_word,
    _flag("recently_registered", -20, "new_domain"),
    _flag("malicious", -35, "flagged_malicious"),
)

HASH_RULES: Tuple[Rule, ...] = (_hash_flags, _hash_history)


class ReputationScorer:
    """
    Trust score for an ip, domain, url or hash.

    Each observation starts from the baseline and runs the type's ordered
    rules; the stored score is overwritten with the fresh value while the
    occurrence counters accumulate in the store.
    """

    def __init__(self, store: Optional[ReputationStore] = None) -> None:
        self.store = store

    def score(
        self,
        entity_type: EntityType,
        value: str,
        context: Optional[Mapping[str, Any]] = None,
        persist: bool = True,
    ) -> ReputationResult:
        ctx = dict(context or {})
        history = self.store.get(entity_type, value) if self.store is not None else None
        result = self.evaluate(entity_type, value, ctx, history)
        if persist and self.store is not None:
            self.store.record_observation(entity_type, value, result, malicious=bool(ctx.get("malicious")), now=utcnow())
        log.debug(
            "reputation key=%s score=%d class=%s factors=%s",
            entity_key(entity_type, value),
            result.score,
            result.classification.value,
            ",".join(result.factors),
        )
        return result

    def evaluate(
        self,
        entity_type: EntityType,
        value: str,
        context: Mapping[str, Any],
        history: Optional[Entity] = None,
    ) -> ReputationResult:
        """Pure scoring step; no store access."""
        if entity_type == EntityType.IP:
            tally, meta = self._score_ip(value, context, history)
        elif entity_type == EntityType.DOMAIN:
            tally, meta = self._score_domain(value, context, history)
        elif entity_type == EntityType.URL:
            tally, meta = self._score_url(value, context, history)
        else:
            tally, meta = self._score_hash(value, context, history)

        score = max(0, min(100, tally.score))
        return ReputationResult(
            score=score, classification=classification_for_score(score), factors=tally.factors, metadata=meta
        )

    def get_reputation(self, entity_type: EntityType, value: str) -> ReputationResult:
        if self.store is not None:
            entity = self.store.get(entity_type, value)
            if entity is not None:
                result = entity.to_result()
                result.metadata.update(occurrences=entity.occurrences, last_seen=entity.last_seen.isoformat())
                return result
        return self.score(entity_type, value)

    @staticmethod
    def _run(rules, value, context, history, tally: Optional[_Tally] = None) -> _Tally:
        tally = tally or _Tally()
        for rule in rules:
            try:
                rule(value, context, history, tally)
            except Exception as e:
                log.warning("reputation_rule_failed rule=%s value=%s error=%r", rule.__name__, value, e)
        return tally

    def _score_ip(self, value, context, history) -> Tuple[_Tally, Dict[str, Any]]:
        if not is_valid_ip(value):
            return _Tally(0, ["invalid"]), {"error": "invalid ip"}
        tally = self._run(IP_RULES + (_bad_history,), value, context, history)
        return tally, {"ip_type": "IPv6" if ":" in value else "IPv4"}

    def _score_domain(self, value, context, history) -> Tuple[_Tally, Dict[str, Any]]:
        domain = normalize_domain(value)
        if not is_valid_domain(domain):
            return _Tally(0, ["invalid"]), {"error": "invalid domain"}
        tally = self._run(DOMAIN_RULES + (_bad_history,), domain, context, history)
        return tally, {"tld": domain.rsplit(".", 1)[-1], "length": len(domain)}

    def _score_url(self, value, context, history) -> Tuple[_Tally, Dict[str, Any]]:
        try:
            parts = urlsplit(value)
            host = parts.hostname
        except ValueError:
            host = None
        if not host:
            return _Tally(0, ["invalid"]), {"error": "invalid url"}

        host_is_ip = is_valid_ip(host)
        if host_is_ip:
            tally, _ = self._score_ip(host, context, None)
        else:
            tally, _ = self._score_domain(host, context, None)
            if tally.factors == ["invalid"]:
                return tally, {"error": "invalid url host", "host": host}

        if parts.scheme == "http":
            tally.add(-10, "no_https")
        path = parts.path.lower()
        if any(p in path for p in SUSPICIOUS_PATHS):
            tally.add(-5, "suspicious_path")
        if len(parts.query) > 100:
            tally.add(-5, "long_query_string")
        if host_is_ip:
            tally.add(-15, "ip_based_url")
        self._run((_bad_history,), value, context, history, tally)
        return tally, {"scheme": parts.scheme, "host": host}

    def _score_hash(self, value, context, history) -> Tuple[_Tally, Dict[str, Any]]:
        if not is_valid_hash(value):
            return _Tally(0, ["invalid"]), {"error": "invalid hash"}
        tally = self._run(HASH_RULES, value, context, history)
        kind = hash_kind(value)
        return tally, {"hash_type": kind.value.upper() if kind else "unknown"}
