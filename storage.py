# Telemetry Persistence
# File: storage.py

"""
Append/query store for telemetry records.
MongoDB in deployment, an in-process list for local runs and tests.
"""

import threading
from abc import ABC, abstractmethod
from typing import Iterable, List, Optional
import logging

from pymongo import ASCENDING, DESCENDING, MongoClient

from simulator import SimulationConfig, TelemetryRecord

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

class TelemetryStore(ABC):
    """Append-only telemetry collection"""

    @abstractmethod
    def ping(self):
        """Raise if the backend is unreachable"""

    @abstractmethod
    def insert_one(self, record: TelemetryRecord):
        pass

    @abstractmethod
    def insert_many(self, records: Iterable[TelemetryRecord]):
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    @abstractmethod
    def find_latest(self, drone_id: str) -> Optional[TelemetryRecord]:
        """Most recent record for a drone, or None"""

    @abstractmethod
    def find_recent(self, drone_id: Optional[str] = None, limit: int = 100) -> List[TelemetryRecord]:
        """Newest-first records, optionally for a single drone"""

    @abstractmethod
    def close(self):
        """Release the backend connection"""

# ============================================================================
# MONGODB STORE
# ============================================================================

class MongoTelemetryStore(TelemetryStore):
    """Telemetry stored as one document per reading"""

    def __init__(self, uri: str, database: str, collection: str = "telemetry",
                 timeout_ms: int = 5000, client: Optional[MongoClient] = None):
        """
        Args:
            uri: MongoDB connection string
            database: Database name
            collection: Collection holding telemetry documents
            timeout_ms: Server selection timeout
            client: Pre-built client (tests)
        """
        self.client = client or MongoClient(uri, serverSelectionTimeoutMS=timeout_ms)
        self.collection = self.client[database][collection]
        self._indexed = False

    def ping(self):
        self.client.admin.command('ping')
        if not self._indexed:
            self.collection.create_index([('drone_id', ASCENDING), ('timestamp', DESCENDING)])
            self._indexed = True
            logger.info(f"MongoDB connected: {self.collection.full_name}")

    def insert_one(self, record: TelemetryRecord):
        self.collection.insert_one(record.to_document())

    def insert_many(self, records: Iterable[TelemetryRecord]):
        docs = [r.to_document() for r in records]
        if docs:
            self.collection.insert_many(docs, ordered=False)

    def count(self) -> int:
        return self.collection.count_documents({})

    def find_latest(self, drone_id: str) -> Optional[TelemetryRecord]:
        doc = self.collection.find_one({'drone_id': drone_id}, sort=[('timestamp', DESCENDING)])
        return TelemetryRecord.from_document(doc) if doc else None

    def find_recent(self, drone_id: Optional[str] = None, limit: int = 100) -> List[TelemetryRecord]:
        query = {'drone_id': drone_id} if drone_id else {}
        cursor = self.collection.find(query).sort('timestamp', DESCENDING).limit(limit)
        return [TelemetryRecord.from_document(doc) for doc in cursor]

    def close(self):
        self.client.close()

# ============================================================================
# IN-MEMORY STORE
# ============================================================================

class InMemoryTelemetryStore(TelemetryStore):
    """Thread-safe list of records"""

    def __init__(self):
        self.records: List[TelemetryRecord] = []
        self.insert_calls = 0
        self.closed = False
        self._lock = threading.Lock()

    def ping(self):
        return True

    def insert_one(self, record: TelemetryRecord):
        with self._lock:
            self.records.append(record)
            self.insert_calls += 1

    def insert_many(self, records: Iterable[TelemetryRecord]):
        with self._lock:
            self.records.extend(records)
            self.insert_calls += 1

    def count(self) -> int:
        with self._lock:
            return len(self.records)

    def find_latest(self, drone_id: str) -> Optional[TelemetryRecord]:
        recent = self.find_recent(drone_id, limit=1)
        return recent[0] if recent else None

    def find_recent(self, drone_id: Optional[str] = None, limit: int = 100) -> List[TelemetryRecord]:
        with self._lock:
            matching = [r for r in self.records if drone_id is None or r.drone_id == drone_id]
        matching.sort(key=lambda r: r.timestamp, reverse=True)
        return matching[:limit]

    def close(self):
        self.closed = True

def create_store(config: SimulationConfig) -> TelemetryStore:
    """Store backend selected by config.store_backend"""
    if config.store_backend == 'memory':
        logger.info("Using in-memory telemetry store")
        return InMemoryTelemetryStore()
    if config.store_backend != 'mongo':
        raise ValueError(f"Unknown telemetry store backend: {config.store_backend}")
    return MongoTelemetryStore(config.mongo_uri, config.database, config.collection)
