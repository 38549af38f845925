from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from threatwatch.mitre import MitreMapper
from threatwatch.models import CorrelationEdge, Finding, IOCType, Severity

SEVERITY_ORDER = [Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW]


def _recommendations(finding: Finding) -> List[str]:
    base = [
        "Validate the source and confirm the content is genuine.",
        "Check internal telemetry (DNS, proxy, EDR, auth logs) for the extracted indicators.",
    ]
    if finding.severity in (Severity.HIGH, Severity.CRITICAL):
        base.insert(0, "Consider blocking confirmed-malicious indicators at the perimeter.")
        base.append("Escalate per incident response policy and preserve evidence.")
    if finding.iocs.emails:
        base.append("Reset credentials and enforce MFA for exposed accounts.")
    if finding.iocs.cves:
        base.append("Verify patch status for the referenced CVEs.")
    return base


def render_summary_md(
    findings: Sequence[Finding],
    edges: Sequence[CorrelationEdge] = (),
    mapper: Optional[MitreMapper] = None,
    top: int = 20,
) -> str:
    mapper = mapper or MitreMapper()
    by_id: Dict[str, Finding] = {f.id: f for f in findings}
    counts = Counter(f.severity for f in findings)

    lines: List[str] = []
    lines.append("# Threat Findings Summary")
    lines.append("")
    lines.append(f"Generated: {datetime.now(timezone.utc).isoformat()}")
    lines.append("")
    lines.append(f"- **Findings:** {len(findings)}")
    lines.append("- **By severity:** " + ", ".join(f"{s.value} {counts.get(s, 0)}" for s in SEVERITY_ORDER))
    lines.append(f"- **Correlations:** {len(edges)}")
    lines.append("")

    ranked = sorted(findings, key=lambda f: (f.threat_score, f.timestamp), reverse=True)[:top]
    for f in ranked:
        lines.append(f"## {f.severity.value} - {f.title}")
        lines.append("")
        lines.append(f"- **ID:** {f.id}")
        lines.append(f"- **Source:** {f.source}")
        lines.append(f"- **Seen:** {f.timestamp.isoformat()}")
        lines.append(f"- **Score:** {f.threat_score} (confidence {f.confidence})")
        if f.keywords:
            lines.append(f"- **Keywords:** {', '.join(f.keywords)}")
        if f.risk_factors:
            lines.append(f"- **Risk factors:** {'; '.join(f.risk_factors)}")
        if f.correlated_with:
            lines.append(f"- **Correlated with:** {', '.join(f.correlated_with)}")
        lines.append("")

        lines.append("### Indicators")
        iocs = f.iocs.to_dict()
        if iocs:
            lines.append("| type | value | reputation |")
            lines.append("|---|---|---|")
            for kind, values in iocs.items():
                for v in values[:25]:
                    rep = f.reputation.get(f"{IOCType.from_plural(kind).value}:{v}")
                    rep_txt = f"{rep.classification.value} ({rep.score})" if rep else ""
                    lines.append(f"| {kind} | `{v}` | {rep_txt} |")
        else:
            lines.append("_No indicators extracted._")
        lines.append("")

        lines.append("### ATT&CK")
        lines.append(mapper.narrative(f.mitre_techniques))
        lines.append("")

        lines.append("### Recommended Actions")
        for a in _recommendations(f):
            lines.append(f"- {a}")
        lines.append("")

    if edges:
        lines.append("## Correlations")
        lines.append("")
        lines.append("| finding a | finding b | score | shared | techniques |")
        lines.append("|---|---|---|---|---|")
        for e in edges[:50]:
            a = by_id.get(e.finding_id_a)
            b = by_id.get(e.finding_id_b)
            shared = "; ".join(f"{k}: {', '.join(v)}" for k, v in e.shared_iocs.items())
            techs = ", ".join(t.id for t in e.mitre_techniques)
            lines.append(
                f"| {a.title if a else e.finding_id_a} | {b.title if b else e.finding_id_b} | {e.score} | {shared} | {techs} |"
            )
        lines.append("")

    return "\n".join(lines)
