from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import List, Optional

from threatwatch.models import Classification, Entity, EntityType, ReputationResult, utcnow
from threatwatch.storage.db import connect, ensure_parent_dir, from_db_time, to_db_time


class ReputationStore:
    """Per-entity reputation state, one row per (type, value)."""

    def __init__(self, path: str) -> None:
        ensure_parent_dir(path)
        self.path = path
        self._init()

    def _init(self) -> None:
        with connect(self.path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS reputation_scores (
                    entity_type TEXT NOT NULL,
                    entity_value TEXT NOT NULL,
                    score INTEGER NOT NULL DEFAULT 50,
                    classification TEXT NOT NULL DEFAULT 'unknown',
                    occurrences INTEGER NOT NULL DEFAULT 1,
                    malicious_count INTEGER NOT NULL DEFAULT 0,
                    first_seen TEXT NOT NULL,
                    last_seen TEXT NOT NULL,
                    factors TEXT NOT NULL DEFAULT '[]',
                    metadata TEXT NOT NULL DEFAULT '{}',
                    PRIMARY KEY (entity_type, entity_value)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_reputation_score ON reputation_scores(score)")

    @staticmethod
    def _row_to_entity(row: sqlite3.Row) -> Entity:
        return Entity(
            entity_type=EntityType(row["entity_type"]),
            value=row["entity_value"],
            score=int(row["score"]),
            classification=Classification(row["classification"]),
            occurrences=int(row["occurrences"]),
            malicious_count=int(row["malicious_count"]),
            first_seen=from_db_time(row["first_seen"]),
            last_seen=from_db_time(row["last_seen"]),
            factors=json.loads(row["factors"]),
            metadata=json.loads(row["metadata"]),
        )

    def get(self, entity_type: EntityType, value: str) -> Optional[Entity]:
        with connect(self.path) as conn:
            row = conn.execute(
                "SELECT * FROM reputation_scores WHERE entity_type = ? AND entity_value = ?",
                (entity_type.value, value),
            ).fetchone()
        return self._row_to_entity(row) if row else None

    def record_observation(
        self,
        entity_type: EntityType,
        value: str,
        result: ReputationResult,
        malicious: bool,
        now: Optional[datetime] = None,
    ) -> Entity:
        """
        Store a fresh score for the entity.

        Score, classification and factors are overwritten; the counters are
        incremented inside the single upsert statement so concurrent writers
        never lose an observation.
        """
        ts = to_db_time(now or utcnow())
        with connect(self.path) as conn:
            conn.execute(
                """
                INSERT INTO reputation_scores
                    (entity_type, entity_value, score, classification, occurrences, malicious_count,
                     first_seen, last_seen, factors, metadata)
                VALUES (?, ?, ?, ?, 1, ?, ?, ?, ?, ?)
                ON CONFLICT(entity_type, entity_value) DO UPDATE SET
                    score = excluded.score,
                    classification = excluded.classification,
                    occurrences = reputation_scores.occurrences + 1,
                    malicious_count = reputation_scores.malicious_count + excluded.malicious_count,
                    last_seen = excluded.last_seen,
                    factors = excluded.factors,
                    metadata = excluded.metadata
                """,
                (
                    entity_type.value,
                    value,
                    result.score,
                    result.classification.value,
                    1 if malicious else 0,
                    ts,
                    ts,
                    json.dumps(result.factors),
                    json.dumps(result.metadata, default=str),
                ),
            )
            row = conn.execute(
                "SELECT * FROM reputation_scores WHERE entity_type = ? AND entity_value = ?",
                (entity_type.value, value),
            ).fetchone()
        return self._row_to_entity(row)

    def list_entities(self, classification: Optional[Classification] = None, limit: int = 100) -> List[Entity]:
        sql = "SELECT * FROM reputation_scores"
        params: tuple = ()
        if classification is not None:
            sql += " WHERE classification = ?"
            params = (classification.value,)
        sql += " ORDER BY score ASC, last_seen DESC LIMIT ?"
        with connect(self.path) as conn:
            rows = conn.execute(sql, params + (limit,)).fetchall()
        return [self._row_to_entity(r) for r in rows]
