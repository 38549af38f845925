from __future__ import annotations

import json
from datetime import datetime
from typing import Iterable, List, Optional

from threatwatch.models import CorrelationEdge, Finding
from threatwatch.storage.db import connect, ensure_parent_dir, to_db_time


class FindingStore:
    """Scored findings and the correlation edges between them."""

    def __init__(self, path: str) -> None:
        ensure_parent_dir(path)
        self.path = path
        self._init()

    def _init(self) -> None:
        with connect(self.path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS findings (
                    id TEXT PRIMARY KEY,
                    timestamp TEXT NOT NULL,
                    source TEXT NOT NULL,
                    title TEXT NOT NULL,
                    threat_score REAL NOT NULL DEFAULT 0,
                    severity TEXT NOT NULL DEFAULT 'LOW',
                    status TEXT NOT NULL DEFAULT 'new',
                    data TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_findings_timestamp ON findings(timestamp)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS correlations (
                    finding_id_a TEXT NOT NULL,
                    finding_id_b TEXT NOT NULL,
                    score REAL NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (finding_id_a, finding_id_b)
                )
                """
            )

    def save(self, finding: Finding) -> None:
        with connect(self.path) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO findings (id, timestamp, source, title, threat_score, severity, status, data) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    finding.id,
                    to_db_time(finding.timestamp),
                    finding.source,
                    finding.title,
                    finding.threat_score,
                    finding.severity.value,
                    finding.status,
                    finding.model_dump_json(),
                ),
            )

    def get(self, finding_id: str) -> Optional[Finding]:
        with connect(self.path) as conn:
            row = conn.execute("SELECT data FROM findings WHERE id = ?", (finding_id,)).fetchone()
        return Finding.model_validate_json(row["data"]) if row else None

    def recent(self, since: datetime, limit: int = 1000, until: Optional[datetime] = None) -> List[Finding]:
        """Findings in ``[since, until]``; the newest ``limit`` rows, oldest first."""
        sql = "SELECT data FROM findings WHERE timestamp >= ?"
        params: tuple = (to_db_time(since),)
        if until is not None:
            sql += " AND timestamp <= ?"
            params += (to_db_time(until),)
        with connect(self.path) as conn:
            rows = conn.execute(sql + " ORDER BY timestamp DESC LIMIT ?", params + (limit,)).fetchall()
        return [Finding.model_validate_json(r["data"]) for r in reversed(rows)]

    def count_since(self, since: datetime) -> int:
        with connect(self.path) as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM findings WHERE timestamp >= ?", (to_db_time(since),)).fetchone()
        return int(row["n"])

    def save_edges(self, edges: Iterable[CorrelationEdge]) -> int:
        """Upsert edges and add the back-references on both findings."""
        edges = list(edges)
        if not edges:
            return 0
        with connect(self.path) as conn:
            backrefs = {}
            for e in edges:
                a, b = sorted((e.finding_id_a, e.finding_id_b))
                conn.execute(
                    "INSERT OR REPLACE INTO correlations (finding_id_a, finding_id_b, score, data) VALUES (?, ?, ?, ?)",
                    (a, b, e.score, e.model_dump_json()),
                )
                backrefs.setdefault(a, set()).add(b)
                backrefs.setdefault(b, set()).add(a)
            for fid, others in backrefs.items():
                row = conn.execute("SELECT data FROM findings WHERE id = ?", (fid,)).fetchone()
                if not row:
                    continue
                finding = Finding.model_validate_json(row["data"])
                finding.correlated_with = sorted(set(finding.correlated_with) | others)
                conn.execute("UPDATE findings SET data = ? WHERE id = ?", (finding.model_dump_json(), fid))
        return len(edges)

    def edges(self, min_score: float = 0.0, limit: int = 500) -> List[CorrelationEdge]:
        with connect(self.path) as conn:
            rows = conn.execute(
                "SELECT data FROM correlations WHERE score >= ? ORDER BY score DESC LIMIT ?", (min_score, limit)
            ).fetchall()
        return [CorrelationEdge.model_validate(json.loads(r["data"])) for r in rows]
