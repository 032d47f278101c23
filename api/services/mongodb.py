# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
MongoDB connection management for the ledger.

The ledger appends inside multi-document transactions, so the deployment
must be a replica set (a single-node ``rs0`` is enough for development).
"""

import os
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from opentelemetry import trace
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, PyMongoError, ServerSelectionTimeoutError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass
class MongoSettings:
    """Connection settings, read from ``MONGODB_*`` variables."""
    uri: str = 'mongodb://localhost:27017/benefit_ledger_dev?replicaSet=rs0'
    database: str = 'benefit_ledger_dev'
    max_pool_size: int = 10
    min_pool_size: int = 1
    server_selection_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> "MongoSettings":
        return cls(
            uri=os.getenv('MONGODB_URI', cls.uri),
            database=os.getenv('MONGODB_DATABASE', cls.database),
            max_pool_size=int(os.getenv('MONGODB_MAX_POOL_SIZE', str(cls.max_pool_size))),
            min_pool_size=int(os.getenv('MONGODB_MIN_POOL_SIZE', str(cls.min_pool_size))),
            server_selection_timeout_ms=int(
                os.getenv('MONGODB_SERVER_SELECTION_TIMEOUT_MS', str(cls.server_selection_timeout_ms))
            )
        )


# Collection name -> list of (keys, options)
LEDGER_INDEXES = {
    "reports": [
        ([("beneficiaryId", ASCENDING), ("benefitType", ASCENDING),
          ("providedAt", DESCENDING), ("createdAt", DESCENDING)], {"name": "slot_latest"}),
        ([("beneficiaryId", ASCENDING), ("providedAt", DESCENDING)], {"name": "beneficiary_history"}),
    ],
    "audit_logs": [
        ([("entity", ASCENDING), ("entityId", ASCENDING), ("timestamp", DESCENDING)], {"name": "entity_trail"}),
        ([("traceId", ASCENDING)], {"name": "trace_lookup", "sparse": True}),
    ],
}


class MongoDBService:
    """Lazily connected MongoDB client shared by the ledger and the audit trail."""

    def __init__(self, settings: Optional[MongoSettings] = None):
        self.settings = settings or MongoSettings.from_env()
        self._client: Optional[MongoClient] = None
        self._client_lock = threading.Lock()

    @property
    def database_name(self) -> str:
        return self.settings.database

    @property
    def client(self) -> MongoClient:
        if self._client is not None:
            return self._client

        with self._client_lock:
            if self._client is None:
                client = MongoClient(
                    self.settings.uri,
                    maxPoolSize=self.settings.max_pool_size,
                    minPoolSize=self.settings.min_pool_size,
                    serverSelectionTimeoutMS=self.settings.server_selection_timeout_ms,
                    retryWrites=True,
                    # Ledger timestamps are compared with aware datetimes
                    tz_aware=True
                )
                try:
                    client.admin.command('ping')
                except (ConnectionFailure, ServerSelectionTimeoutError):
                    logger.error("MongoDB unreachable", extra={"database": self.database_name})
                    client.close()
                    raise
                logger.info("MongoDB connected", extra={"database": self.database_name})
                self._client = client
            return self._client

    @property
    def database(self) -> Database:
        return self.client[self.database_name]

    def get_collection(self, collection_name: str) -> Collection:
        return self.database[collection_name]

    def create_indexes(self) -> None:
        """Create the indexes the ledger queries rely on. Idempotent."""
        with tracer.start_as_current_span("mongodb.create_indexes"):
            for collection_name, indexes in LEDGER_INDEXES.items():
                collection = self.get_collection(collection_name)
                for keys, options in indexes:
                    collection.create_index(keys, **options)
        logger.info("MongoDB ledger indexes ensured")

    def health_check(self) -> Dict[str, Any]:
        try:
            hello = self.client.admin.command('hello')
        except PyMongoError as e:
            logger.error("MongoDB health check failed", extra={"error": str(e)})
            return {"status": "unhealthy", "backend": "mongodb", "error": str(e)}

        return {
            "status": "healthy",
            "backend": "mongodb",
            "database": self.database_name,
            # Conditional appends need transactions
            "transactions": bool(hello.get("setName")),
        }

    def close_connection(self) -> None:
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None


_mongodb_service: Optional[MongoDBService] = None
_mongodb_service_lock = threading.Lock()


def get_mongodb_service() -> MongoDBService:
    """Process-wide MongoDB service."""
    global _mongodb_service
    with _mongodb_service_lock:
        if _mongodb_service is None:
            _mongodb_service = MongoDBService()
        return _mongodb_service
