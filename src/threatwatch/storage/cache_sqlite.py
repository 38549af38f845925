from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import ValidationError

from threatwatch.models import EnrichmentRecord, EntityType, entity_key, utcnow
from threatwatch.storage.db import connect, ensure_parent_dir, from_db_time, to_db_time

log = logging.getLogger(__name__)


class SQLiteCache:
    """Enrichment records keyed ``"{type}:{value}"`` with a per-record TTL."""

    def __init__(self, path: str, ttl_hours: float, clock: Callable[[], datetime] = utcnow) -> None:
        ensure_parent_dir(path)
        self.path = path
        self.ttl = timedelta(hours=ttl_hours)
        self._clock = clock
        self._init()

    def _init(self) -> None:
        with connect(self.path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS enrichment_cache (
                    key TEXT PRIMARY KEY,
                    entity_type TEXT NOT NULL,
                    value TEXT NOT NULL,
                    fetched_at TEXT NOT NULL,
                    ttl_seconds INTEGER NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )

    def _now(self) -> datetime:
        return self._clock()

    def get(self, entity_type: EntityType, value: str) -> Optional[EnrichmentRecord]:
        """Fresh record for the entity, or None; expired and unreadable rows are dropped."""
        key = entity_key(entity_type, value)
        with connect(self.path) as conn:
            row = conn.execute(
                "SELECT fetched_at, ttl_seconds, payload FROM enrichment_cache WHERE key = ?", (key,)
            ).fetchone()
            if not row:
                return None
            try:
                record = EnrichmentRecord(
                    entity_type=entity_type,
                    value=value,
                    payloads=json.loads(row["payload"]),
                    fetched_at=from_db_time(row["fetched_at"]),
                    ttl_seconds=int(row["ttl_seconds"]),
                    cached=True,
                )
            # malformed JSON and timestamps raise ValueError
            except (ValidationError, ValueError) as e:
                conn.execute("DELETE FROM enrichment_cache WHERE key = ?", (key,))
                log.warning("cache_row_corrupt key=%s error=%s", key, str(e).splitlines()[0])
                return None
            if not record.is_fresh(self._now()):
                conn.execute("DELETE FROM enrichment_cache WHERE key = ?", (key,))
                log.debug("cache_expired key=%s", key)
                return None
            return record

    def set(self, record: EnrichmentRecord) -> None:
        with connect(self.path) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO enrichment_cache (key, entity_type, value, fetched_at, ttl_seconds, payload) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    record.key,
                    record.entity_type.value,
                    record.value,
                    to_db_time(record.fetched_at),
                    record.ttl_seconds,
                    json.dumps(record.payloads, default=str),
                ),
            )

    def expire(self) -> int:
        """Drop every record past its TTL; returns the number removed."""
        now = self._now()
        removed = 0
        with connect(self.path) as conn:
            rows = conn.execute("SELECT key, fetched_at, ttl_seconds FROM enrichment_cache").fetchall()
            for row in rows:
                if now - from_db_time(row["fetched_at"]) >= timedelta(seconds=int(row["ttl_seconds"])):
                    conn.execute("DELETE FROM enrichment_cache WHERE key = ?", (row["key"],))
                    removed += 1
        return removed

    @property
    def ttl_seconds(self) -> int:
        return int(self.ttl.total_seconds())
