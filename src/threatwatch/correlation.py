from __future__ import annotations

import logging
from datetime import datetime, timedelta
from itertools import combinations
from typing import List, Optional, Sequence

from threatwatch.config import CorrelationConfig
from threatwatch.mitre import MitreMapper
from threatwatch.models import CorrelationEdge, Finding, utcnow
from threatwatch.storage.findings_store import FindingStore

log = logging.getLogger(__name__)

SHARED_IOC_TYPE_WEIGHT = 0.3
SHARED_KEYWORD_WEIGHT = 0.1
SAME_SOURCE_WEIGHT = 0.2
WITHIN_1H_WEIGHT = 0.2
WITHIN_2H_WEIGHT = 0.1


class CorrelationEngine:
    """
    Pairwise relatedness over a bounded window of findings.

    Every unordered pair is compared, so cost grows with the square of the
    window; ``max_window`` keeps a backlog from making a run unbounded.
    """

    def __init__(self, config: Optional[CorrelationConfig] = None, mapper: Optional[MitreMapper] = None) -> None:
        self.config = config or CorrelationConfig()
        self.mapper = mapper or MitreMapper()

    def score_pair(self, a: Finding, b: Finding) -> CorrelationEdge:
        score = 0.0
        shared = a.iocs.intersection(b.iocs)
        score += SHARED_IOC_TYPE_WEIGHT * len(shared)

        theirs = {k.lower() for k in b.keywords}
        common_keywords = list(dict.fromkeys(k.lower() for k in a.keywords if k.lower() in theirs))
        score += SHARED_KEYWORD_WEIGHT * len(common_keywords)

        if a.source == b.source:
            score += SAME_SOURCE_WEIGHT

        gap = abs(a.timestamp - b.timestamp)
        if gap < timedelta(hours=1):
            score += WITHIN_1H_WEIGHT
        elif gap < timedelta(hours=2):
            score += WITHIN_2H_WEIGHT

        return CorrelationEdge(
            finding_id_a=a.id,
            finding_id_b=b.id,
            score=round(min(score, 1.0), 4),
            shared_iocs={t.plural: values for t, values in shared.items()},
            shared_keywords=common_keywords,
        )

    def correlate(self, findings: Sequence[Finding]) -> List[CorrelationEdge]:
        findings = list(findings)
        if len(findings) > self.config.max_window:
            log.warning(
                "correlation_window_truncated findings=%d max_window=%d", len(findings), self.config.max_window
            )
            findings = sorted(findings, key=lambda f: f.timestamp)[-self.config.max_window :]

        edges: List[CorrelationEdge] = []
        for a, b in combinations(findings, 2):
            edge = self.score_pair(a, b)
            if edge.score > self.config.threshold:
                edge.mitre_techniques = self.mapper.map_findings([a, b])
                edges.append(edge)

        edges.sort(key=lambda e: e.score, reverse=True)
        log.info("correlation_done findings=%d pairs=%d edges=%d", len(findings), len(findings) * (len(findings) - 1) // 2, len(edges))
        return edges

    def correlate_recent(self, store: FindingStore, now: Optional[datetime] = None) -> List[CorrelationEdge]:
        """Correlate the trailing window from the store and persist the edges."""
        now = now or utcnow()
        since = now - timedelta(hours=self.config.window_hours)
        total = store.count_since(since)
        if total > self.config.max_window:
            log.warning("correlation_window_truncated findings=%d max_window=%d", total, self.config.max_window)
        window = store.recent(since, limit=self.config.max_window)
        edges = self.correlate(window)
        store.save_edges(edges)
        return edges
