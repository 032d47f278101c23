# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Audit trail for ledger writes.

Every registration, narrative edit and removal leaves an entry with the
actor, before/after snapshots, the changed fields and the trace it ran in.
"""

import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pymongo import DESCENDING

from models.base import utcnow
from .mongodb import MongoDBService

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Bookkeeping fields left out of change lists
UNTRACKED_FIELDS = frozenset({"id", "_id", "updated_at"})


def diff_snapshots(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Field-level differences between two snapshots, sorted by field name."""
    if not before or not after:
        return []

    return [
        {"field": name, "old_value": before.get(name), "new_value": after.get(name)}
        for name in sorted((set(before) | set(after)) - UNTRACKED_FIELDS)
        if before.get(name) != after.get(name)
    ]


class AuditService:
    """
    Writes audit entries to ``audit_logs`` when MongoDB is configured.

    Without a MongoDB service the trail only goes to the log.
    """

    collection_name = "audit_logs"

    def __init__(self, mongo_service: Optional[MongoDBService] = None):
        self.mongo_service = mongo_service

    def log_action(
        self,
        entity: str,
        entity_id: str,
        action: str,
        actor: Optional[str] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Record one action on an entity.

        Returns:
            Id of the audit entry
        """
        with tracer.start_as_current_span(
            "audit.log_action",
            attributes={"audit.entity": entity, "audit.entity_id": entity_id, "audit.action": action}
        ) as span:
            context = span.get_span_context()
            changes = diff_snapshots(before, after)
            entry = {
                "_id": ObjectId(),
                "timestamp": utcnow(),
                "entity": entity,
                "entityId": entity_id,
                "action": action,
                "actor": actor,
                "before": before,
                "after": after,
                "changes": changes,
                "traceId": format(context.trace_id, "032x") if context.is_valid else None,
                "spanId": format(context.span_id, "016x") if context.is_valid else None,
                "schemaVersion": 1
            }

            if self.mongo_service is not None:
                try:
                    self.mongo_service.get_collection(self.collection_name).insert_one(entry)
                except Exception as e:
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    logger.error(
                        "Failed to persist audit entry",
                        extra={"entity": entity, "entity_id": entity_id, "action": action, "error": str(e)}
                    )
                    raise

            logger.info(
                "Audit entry recorded",
                extra={
                    "audit_id": str(entry["_id"]),
                    "entity": entity,
                    "entity_id": entity_id,
                    "action": action,
                    "actor": actor,
                    "changed_fields": [change["field"] for change in changes]
                }
            )
            return str(entry["_id"])

    def history(self, entity: str, entity_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Audit entries for one entity, newest first."""
        if self.mongo_service is None:
            return []

        cursor = (
            self.mongo_service.get_collection(self.collection_name)
            .find({"entity": entity, "entityId": entity_id})
            .sort("timestamp", DESCENDING)
            .limit(limit)
        )
        entries = []
        for document in cursor:
            document["id"] = str(document.pop("_id"))
            entries.append(document)
        return entries
