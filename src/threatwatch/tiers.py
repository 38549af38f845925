from __future__ import annotations

from typing import Tuple

from threatwatch.models import Classification, Severity

# Shared by threat severity and entity classification: >=80, >=60, >=40, >=20.
SCORE_TIERS: Tuple[int, ...] = (80, 60, 40, 20)

_SEVERITIES = (Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW, Severity.LOW)
_CLASSIFICATIONS = (
    Classification.TRUSTED,
    Classification.LIKELY_SAFE,
    Classification.UNKNOWN,
    Classification.SUSPICIOUS,
    Classification.MALICIOUS,
)


def tier_index(score: float) -> int:
    for i, threshold in enumerate(SCORE_TIERS):
        if score >= threshold:
            return i
    return len(SCORE_TIERS)


def severity_for_score(score: float) -> Severity:
    return _SEVERITIES[tier_index(score)]


def classification_for_score(score: float) -> Classification:
    return _CLASSIFICATIONS[tier_index(score)]
