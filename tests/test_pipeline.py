import csv
import json
import logging
from datetime import timedelta
from pathlib import Path

import pytest
import yaml

from conftest import EXAMPLE_KEYWORDS, EXAMPLE_TEXT, T0
from threatwatch.enrichment import EnrichmentOrchestrator
from threatwatch.errors import ConfigError, StorageError
from threatwatch.extract import IOCExtractor
from threatwatch.intel import MockProvider
from threatwatch.logging_setup import _HANDLER_TAG
from threatwatch.mitre import MitreMapper
from threatwatch.models import Classification, CollectorRecord, EntityType, Severity
from threatwatch.pipeline import (
    FindingProcessor,
    correlate_stored,
    load_records_jsonl,
    lookup_indicator,
    run_pipeline,
)
from threatwatch.reputation import ReputationScorer
from threatwatch.scoring import ThreatScorer
from threatwatch.storage import FindingStore, ReputationStore

ROOT = Path(__file__).resolve().parent.parent


@pytest.fixture(autouse=True)
def _drop_log_handlers():
    yield
    root = logging.getLogger()
    for h in [h for h in root.handlers if getattr(h, _HANDLER_TAG, False)]:
        root.removeHandler(h)
        h.close()


class FlakyStore(FindingStore):
    def __init__(self, path, failures):
        super().__init__(path)
        self.failures = failures
        self.attempts = 0

    def save(self, finding):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise StorageError("database is locked")
        super().save(finding)


def _processor(db_path, store=None):
    return FindingProcessor(
        keywords=EXAMPLE_KEYWORDS + ["ransomware", "c2"],
        extractor=IOCExtractor(),
        orchestrator=EnrichmentOrchestrator([MockProvider()], retry_delay_seconds=0),
        reputation=ReputationScorer(ReputationStore(db_path)),
        scorer=ThreatScorer(),
        mapper=MitreMapper(),
        store=store or FindingStore(db_path),
        store_write_attempts=3,
        retry_delay=0,
    )


def _config(tmp_path, extra_records=()):
    input_path = tmp_path / "findings.jsonl"
    lines = (ROOT / "data" / "findings.jsonl").read_text().splitlines()
    input_path.write_text("\n".join(lines + list(extra_records)) + "\n")
    out = tmp_path / "out"
    config = {
        "input": {"findings_jsonl": str(input_path)},
        "output": {"dir": str(out)},
        "logging": {"level": "INFO", "file": str(out / "pipeline.log")},
        "database": str(tmp_path / "threatwatch.db"),
        "keywords": ["leaked", "database", "dump", "breach", "ransomware", "exploit", "phishing", "password", "c2"],
        "enrichment": {"mode": "offline", "retry_delay_seconds": 0},
        "mitre_file": str(ROOT / "config" / "mitre.yaml"),
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(config))
    return str(path), out


@pytest.mark.asyncio
async def test_process_example_record(db_path):
    processor = _processor(db_path)
    record = CollectorRecord(source="Pastebin", title="Leaked database dump", snippet=EXAMPLE_TEXT, timestamp=T0)

    finding = await processor.process(record)

    assert finding.status == "scored"
    assert finding.iocs.ips == ["203.0.113.5"]
    assert finding.keywords == EXAMPLE_KEYWORDS
    assert finding.severity == Severity.HIGH
    assert set(finding.reputation) == {"ip:203.0.113.5", "hash:d41d8cd98f00b204e9800998ecf8427e"}
    assert "T1567" in [t.id for t in finding.mitre_techniques]
    assert processor.store.get(finding.id) == finding


@pytest.mark.asyncio
async def test_process_uses_offline_enrichment(db_path):
    processor = _processor(db_path)
    record = CollectorRecord(
        source="Telegram",
        title="Ransomware affiliate panel",
        snippet="c2 at update-sync[.]xyz and hxxp://185.220.101.4/panel/login, sample 44d88612fea8a8f36de82e1278abb02f",
        keywords=["ransomware"],
        timestamp=T0,
    )

    finding = await processor.process(record)

    assert finding.enrichment["ip"]["185.220.101.4"]["mock"]["tor"] is True
    assert "tor_exit" in finding.reputation["ip:185.220.101.4"].factors
    sample = finding.reputation["hash:44d88612fea8a8f36de82e1278abb02f"]
    assert sample.score == 0 and sample.classification == Classification.MALICIOUS
    # ip 10 + domain 10 + hash 25 from the mock, plus 10 for the malicious hash
    assert finding.sub_scores["enrichment_risk"] == 55
    assert {"T1486", "T1071"} <= {t.id for t in finding.mitre_techniques}


@pytest.mark.asyncio
async def test_high_severity_findings_feed_back_into_reputation(db_path):
    processor = _processor(db_path)
    record = CollectorRecord(source="Pastebin", title="Leaked database dump", snippet=EXAMPLE_TEXT, timestamp=T0)

    first = await processor.process(record)
    second = await processor.process(record)

    assert first.severity == second.severity == Severity.HIGH
    entity = processor.reputation.store.get(EntityType.IP, "203.0.113.5")
    assert entity.occurrences == 2
    assert entity.malicious_count == 2
    # 50 - 30 flagged by severity - 5 for the earlier malicious sighting
    ip = second.reputation["ip:203.0.113.5"]
    assert ip.factors == ["flagged_malicious", "bad_history"]
    assert ip.score == 15


@pytest.mark.asyncio
async def test_low_severity_finding_does_not_flag_indicators(db_path):
    processor = _processor(db_path)
    record = CollectorRecord(source="forum", title="status page", snippet="mirror at 203.0.113.9", timestamp=T0)

    finding = await processor.process(record)

    assert finding.severity == Severity.LOW
    entity = processor.reputation.store.get(EntityType.IP, "203.0.113.9")
    assert (entity.occurrences, entity.malicious_count) == (1, 0)


@pytest.mark.asyncio
async def test_history_stops_at_the_finding_timestamp(db_path):
    processor = _processor(db_path)
    later = CollectorRecord(source="Pastebin", title="dump again", snippet=EXAMPLE_TEXT, timestamp=T0 + timedelta(hours=1))
    await processor.process(later)

    finding = await processor.process(
        CollectorRecord(source="Pastebin", title="Leaked database dump", snippet=EXAMPLE_TEXT, timestamp=T0)
    )

    assert finding.sub_scores["correlation"] == 0


@pytest.mark.asyncio
async def test_store_write_retried_then_succeeds(db_path):
    store = FlakyStore(db_path, failures=2)
    processor = _processor(db_path, store)

    finding = await processor.process(CollectorRecord(source="x", title="breach", timestamp=T0))

    assert finding is not None
    assert store.attempts == 3
    assert store.get(finding.id) is not None


@pytest.mark.asyncio
async def test_store_write_exhausted_skips_finding(db_path, caplog):
    store = FlakyStore(db_path, failures=10)
    processor = _processor(db_path, store)

    with caplog.at_level(logging.WARNING):
        finding = await processor.process(CollectorRecord(source="x", title="breach", timestamp=T0))

    assert finding is None
    assert store.attempts == 3
    assert "finding_skipped" in caplog.text


def test_load_records_counts_invalid_lines(tmp_path):
    path = tmp_path / "in.jsonl"
    path.write_text('{"source": "a", "title": "t"}\n\nnot json\n{"title": "no source"}\n')
    records, invalid = load_records_jsonl(str(path))
    assert [r.source for r in records] == ["a"]
    assert invalid == 2


def test_load_records_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_records_jsonl(str(tmp_path / "absent.jsonl"))


@pytest.mark.asyncio
async def test_run_pipeline_writes_outputs(tmp_path):
    config, out = _config(tmp_path, extra_records=["{broken"])

    summary = await run_pipeline(config)

    assert (summary.read, summary.processed, summary.skipped, summary.invalid) == (6, 5, 0, 1)
    assert summary.edges == 1
    for name in ("scored_findings.json", "findings.csv", "correlations.json", "summary.md", "pipeline.log"):
        assert (out / name).exists()

    scored = json.loads((out / "scored_findings.json").read_text())
    leak = next(f for f in scored if f["title"] == "Leaked database dump")
    assert leak["severity"] in ("HIGH", "CRITICAL")
    assert leak["iocs"]["emails"] == ["breach@evil.com"]
    assert len(leak["correlated_with"]) == 1

    [edge] = json.loads((out / "correlations.json").read_text())
    assert edge["shared_iocs"] == {"ips": ["203.0.113.5"]}
    assert edge["shared_keywords"] == ["dump"]

    with open(out / "findings.csv", newline="") as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 5

    summary_md = (out / "summary.md").read_text()
    assert summary_md.startswith("# Threat Findings Summary")
    assert "## Correlations" in summary_md


@pytest.mark.asyncio
async def test_rerun_correlates_against_stored_findings(tmp_path):
    config, _ = _config(tmp_path)
    first = await run_pipeline(config)
    second = await run_pipeline(config)

    assert second.processed == 5
    # the second batch also links to the copies stored by the first
    assert second.edges > first.edges

    edges = correlate_stored(config)
    assert all(e.score > 0.3 for e in edges)


@pytest.mark.asyncio
async def test_lookup_indicator(tmp_path):
    config, _ = _config(tmp_path)

    record, result = await lookup_indicator(config, EntityType.IP, "185.220.101.4")

    assert record.outcomes["mock"].value == "ok"
    assert "tor_exit" in result.factors
    assert result.classification in (Classification.SUSPICIOUS, Classification.MALICIOUS)
