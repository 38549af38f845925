from threatwatch.storage.cache_sqlite import SQLiteCache
from threatwatch.storage.findings_store import FindingStore
from threatwatch.storage.reputation_store import ReputationStore

__all__ = ["FindingStore", "ReputationStore", "SQLiteCache"]
