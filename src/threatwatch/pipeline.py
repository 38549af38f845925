from __future__ import annotations

import asyncio
import csv
import json
import logging
import os
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from pydantic import BaseModel, Field, ValidationError
from rich.console import Console
from rich.progress import Progress

from threatwatch.config import Settings, load_settings
from threatwatch.correlation import CorrelationEngine
from threatwatch.enrichment import EnrichmentOrchestrator, enrichment_map
from threatwatch.errors import ConfigError, StorageError
from threatwatch.extract import IOCExtractor, match_keywords
from threatwatch.intel import build_providers
from threatwatch.logging_setup import setup_logging
from threatwatch.mitre import MitreMapper
from threatwatch.models import (
    CollectorRecord,
    CorrelationEdge,
    EnrichmentRecord,
    EntityType,
    Finding,
    ReputationResult,
    Severity,
)
from threatwatch.report import render_summary_md
from threatwatch.reputation import ReputationScorer
from threatwatch.scoring import ThreatScorer
from threatwatch.storage import FindingStore, ReputationStore, SQLiteCache

console = Console()
log = logging.getLogger(__name__)

T = TypeVar("T")

HISTORY_WINDOW = timedelta(days=30)
HISTORY_LIMIT = 1000
STORE_RETRY_DELAY = 0.5
FLAGGING_SEVERITIES = frozenset({Severity.HIGH, Severity.CRITICAL})

CSV_FIELDS = [
    "id",
    "timestamp",
    "source",
    "title",
    "url",
    "threat_score",
    "severity",
    "confidence",
    "keywords",
    "ioc_count",
    "iocs",
    "mitre_techniques",
    "risk_factors",
]


class RunSummary(BaseModel):
    read: int = 0
    processed: int = 0
    skipped: int = 0
    invalid: int = 0
    edges: int = 0
    outputs: List[str] = Field(default_factory=list)


class FindingProcessor:
    """
    One collector record through extract -> enrich -> reputation -> ATT&CK -> score -> persist.

    Store writes that fail are retried ``store_write_attempts`` times; after
    that the finding is skipped and ``process`` returns None.
    """

    def __init__(
        self,
        keywords: Iterable[str],
        extractor: IOCExtractor,
        orchestrator: EnrichmentOrchestrator,
        reputation: ReputationScorer,
        scorer: ThreatScorer,
        mapper: MitreMapper,
        store: FindingStore,
        store_write_attempts: int = 3,
        retry_delay: float = STORE_RETRY_DELAY,
    ) -> None:
        self.keywords = tuple(keywords)
        self.extractor = extractor
        self.orchestrator = orchestrator
        self.reputation = reputation
        self.scorer = scorer
        self.mapper = mapper
        self.store = store
        self.store_write_attempts = store_write_attempts
        self.retry_delay = retry_delay

    @classmethod
    def from_settings(cls, settings: Settings) -> "FindingProcessor":
        cache = SQLiteCache(settings.database, settings.enrichment.cache_ttl_hours)
        providers = build_providers(settings.enrichment, settings.database)
        return cls(
            keywords=settings.keywords,
            extractor=IOCExtractor(),
            orchestrator=EnrichmentOrchestrator.from_config(settings.enrichment, providers, cache),
            reputation=ReputationScorer(ReputationStore(settings.database)),
            scorer=ThreatScorer(settings.scoring),
            mapper=MitreMapper.from_file(settings.mitre_file),
            store=FindingStore(settings.database),
            store_write_attempts=settings.store_write_attempts,
        )

    async def process(self, record: CollectorRecord) -> Optional[Finding]:
        finding = Finding.from_record(record)
        try:
            return await self._process(finding)
        except StorageError as e:
            log.error("finding_skipped id=%s title=%r error=%s", finding.id, finding.title, e)
            return None

    async def _process(self, finding: Finding) -> Finding:
        text = finding.text
        finding.iocs = self.extractor.extract(text)
        finding.keywords = list(dict.fromkeys(finding.keywords + match_keywords(text, self.keywords)))

        records = await self.orchestrator.enrich_iocs(finding.iocs)
        finding.enrichment = enrichment_map(records)

        contexts = {r.key: self.orchestrator.derive_context(r.payloads) for r in records}
        for r in records:
            finding.reputation[r.key] = await self.score_entity(r, contexts[r.key], persist=False)

        finding.mitre_techniques = self.mapper.map_finding(finding)
        finding.apply(self.scorer.score_finding(finding, self._history(finding)))

        # one observation per sighting, flagged malicious by a HIGH/CRITICAL finding
        flagged = finding.severity in FLAGGING_SEVERITIES
        for r in records:
            ctx = dict(contexts[r.key], malicious=True) if flagged else contexts[r.key]
            finding.reputation[r.key] = await self.score_entity(r, ctx)

        await self._with_retry(lambda: self.store.save(finding), f"save_finding id={finding.id}")
        log.info(
            "finding_scored id=%s source=%s score=%.2f severity=%s iocs=%d",
            finding.id,
            finding.source,
            finding.threat_score,
            finding.severity.value,
            finding.iocs.total(),
        )
        return finding

    async def score_entity(
        self, record: EnrichmentRecord, context: Optional[Dict[str, bool]] = None, persist: bool = True
    ) -> ReputationResult:
        if context is None:
            context = self.orchestrator.derive_context(record.payloads)
        return await self._with_retry(
            lambda: self.reputation.score(record.entity_type, record.value, context, persist=persist),
            f"reputation key={record.key}",
        )

    def _history(self, finding: Finding) -> List[Finding]:
        try:
            return self.store.recent(
                finding.timestamp - HISTORY_WINDOW, limit=HISTORY_LIMIT, until=finding.timestamp
            )
        except StorageError as e:
            log.warning("history_unavailable id=%s error=%s", finding.id, e)
            return []

    async def _with_retry(self, op: Callable[[], T], what: str) -> T:
        attempt = 1
        while True:
            try:
                return op()
            except StorageError as e:
                if attempt >= self.store_write_attempts:
                    raise
                log.warning("store_write_retry op=%s attempt=%d error=%s", what, attempt, e)
                attempt += 1
                await asyncio.sleep(self.retry_delay)


def load_records_jsonl(path: str) -> Tuple[List[CollectorRecord], int]:
    """Parse collector records, one JSON object per line; malformed lines are logged and counted."""
    records: List[CollectorRecord] = []
    invalid = 0
    try:
        f = open(path, "r", encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read input {path}: {e}") from e
    with f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(CollectorRecord.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValidationError) as e:
                invalid += 1
                log.warning("record_invalid path=%s line=%d error=%s", path, lineno, str(e).splitlines()[0])
    return records, invalid


def _csv_row(f: Finding) -> Dict[str, Any]:
    return {
        "id": f.id,
        "timestamp": f.timestamp.isoformat(),
        "source": f.source,
        "title": f.title,
        "url": f.url or "",
        "threat_score": f.threat_score,
        "severity": f.severity.value,
        "confidence": f.confidence,
        "keywords": ",".join(f.keywords),
        "ioc_count": f.iocs.total(),
        "iocs": json.dumps(f.iocs.to_dict()),
        "mitre_techniques": ",".join(t.id for t in f.mitre_techniques),
        "risk_factors": "; ".join(f.risk_factors),
    }


def write_outputs(
    settings: Settings, findings: Sequence[Finding], edges: Sequence[CorrelationEdge], mapper: MitreMapper
) -> List[str]:
    out = settings.output
    os.makedirs(out.dir, exist_ok=True)
    scored_path = os.path.join(out.dir, out.scored_json)
    csv_path = os.path.join(out.dir, out.findings_csv)
    corr_path = os.path.join(out.dir, out.correlations_json)
    md_path = os.path.join(out.dir, out.summary_md)

    with open(scored_path, "w", encoding="utf-8") as f:
        json.dump([x.model_dump(mode="json") for x in findings], f, indent=2)

    with open(csv_path, "w", newline="", encoding="utf-8") as f:
        w = csv.DictWriter(f, fieldnames=CSV_FIELDS)
        w.writeheader()
        for x in findings:
            w.writerow(_csv_row(x))

    with open(corr_path, "w", encoding="utf-8") as f:
        json.dump([e.model_dump(mode="json") for e in edges], f, indent=2)

    with open(md_path, "w", encoding="utf-8") as f:
        f.write(render_summary_md(findings, edges, mapper))

    return [scored_path, csv_path, corr_path, md_path]


async def run_pipeline(config_path: str) -> RunSummary:
    settings = load_settings(config_path)
    setup_logging(settings.logging)
    log.info("pipeline_start config=%s", config_path)

    processor = FindingProcessor.from_settings(settings)
    removed = processor.orchestrator.cache.expire() if processor.orchestrator.cache else 0
    if removed:
        log.info("cache_expired removed=%d", removed)

    mode = settings.enrichment.mode
    names = [p.name for p in processor.orchestrator.providers]
    log.info("mode=%s providers=%s", mode, names)
    console.print(f"[bold]Mode:[/bold] {mode} | Providers: {names}")

    records, invalid = load_records_jsonl(settings.input.findings_jsonl)
    summary = RunSummary(read=len(records) + invalid, invalid=invalid)

    findings: List[Finding] = []
    with Progress() as progress:
        task_id = progress.add_task("[cyan]Processing findings...", total=len(records))
        for record in records:
            finding = await processor.process(record)
            if finding is None:
                summary.skipped += 1
            else:
                findings.append(finding)
            progress.advance(task_id, 1)
    summary.processed = len(findings)

    edges: List[CorrelationEdge] = []
    if findings:
        engine = CorrelationEngine(settings.correlation, processor.mapper)
        # anchor the window on the newest finding so replayed batches still correlate
        anchor = max(f.timestamp for f in findings)
        try:
            edges = engine.correlate_recent(processor.store, now=anchor)
        except StorageError as e:
            log.error("correlation_failed error=%s", e)
        else:
            linked = {e.finding_id_a for e in edges} | {e.finding_id_b for e in edges}
            for i, f in enumerate(findings):
                if f.id in linked:
                    findings[i] = processor.store.get(f.id) or f
    summary.edges = len(edges)

    summary.outputs = write_outputs(settings, findings, edges, processor.mapper)
    for path in summary.outputs:
        console.print(f"[green]Wrote[/green] {path}")
    log.info(
        "pipeline_done read=%d processed=%d skipped=%d invalid=%d edges=%d",
        summary.read,
        summary.processed,
        summary.skipped,
        summary.invalid,
        summary.edges,
    )
    return summary


def correlate_stored(config_path: str) -> List[CorrelationEdge]:
    settings = load_settings(config_path)
    setup_logging(settings.logging)
    engine = CorrelationEngine(settings.correlation, MitreMapper.from_file(settings.mitre_file))
    return engine.correlate_recent(FindingStore(settings.database))


async def lookup_indicator(
    config_path: str, entity_type: EntityType, value: str
) -> Tuple[EnrichmentRecord, ReputationResult]:
    """Enrich a single indicator and score its reputation, persisting both."""
    settings = load_settings(config_path)
    setup_logging(settings.logging)
    processor = FindingProcessor.from_settings(settings)
    record = await processor.orchestrator.enrich(entity_type, value)
    result = await processor.score_entity(record)
    return record, result
