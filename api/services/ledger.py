# SPDX-License-Identifier: Apache-2.0

"""
Benefit ledger: the append-oriented store of delivery reports.

Two backends share the BenefitLedger contract: an in-memory store for tests
and single-process deployments, and a MongoDB store with transactional
conditional appends.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Any

from bson import ObjectId
from bson.errors import InvalidId
from opentelemetry import trace
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, OperationFailure

from domain.errors import ConcurrencyConflictError, NotFoundError
from models.base import advance_timestamp, generate_object_id, utcnow
from models.entities import NARRATIVE_FIELDS, Report, slot_key
from models.enums import BenefitType
from .mongodb import MongoDBService

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Sentinel for "no condition on the current last delivery"
ANY_LAST = object()


def _ordering_key(report: Report):
    return (report.provided_at, report.created_at)


class BenefitLedger:
    """
    Storage contract for delivery reports.

    ``append`` accepts an ``expected_last_id`` condition: the id of the last
    delivery the caller based its eligibility decision on (None when it saw
    no delivery). The append fails with ConcurrencyConflictError if the slot
    moved since.
    """

    def last_delivery(
        self,
        beneficiary_id: str,
        benefit_type: BenefitType,
        include_deleted: bool = True
    ) -> Optional[Report]:
        raise NotImplementedError

    def append(
        self,
        report: Report,
        expected_last_id: Any = ANY_LAST,
        include_deleted: bool = True
    ) -> Report:
        raise NotImplementedError

    def update_narrative(self, report_id: str, fields: Dict[str, Any]) -> Report:
        raise NotImplementedError

    def find_by_id(self, report_id: str, include_deleted: bool = True) -> Optional[Report]:
        raise NotImplementedError

    def list_by_beneficiary(
        self,
        beneficiary_id: str,
        benefit_type: Optional[BenefitType] = None,
        include_deleted: bool = False
    ) -> List[Report]:
        raise NotImplementedError

    def soft_delete(self, report_id: str, deleted_by: Optional[str] = None) -> Report:
        raise NotImplementedError

    def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy", "backend": self.__class__.__name__}

    @staticmethod
    def _narrative_updates(fields: Dict[str, Any]) -> Dict[str, Any]:
        unexpected = set(fields) - set(NARRATIVE_FIELDS)
        if unexpected:
            raise ValueError(f"Only narrative fields can be updated, got: {', '.join(sorted(unexpected))}")
        return {name: value for name, value in fields.items() if value is not None}


class InMemoryBenefitLedger(BenefitLedger):
    """Thread-safe in-memory ledger."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._lock = threading.RLock()
        self._reports: Dict[str, Report] = {}
        self._slots: Dict[str, List[str]] = {}

    def _latest(self, key: str, include_deleted: bool) -> Optional[Report]:
        candidates = [
            self._reports[report_id] for report_id in self._slots.get(key, [])
            if include_deleted or not self._reports[report_id].is_deleted()
        ]
        if not candidates:
            return None
        return max(candidates, key=_ordering_key)

    def last_delivery(self, beneficiary_id, benefit_type, include_deleted=True):
        with self._lock:
            latest = self._latest(slot_key(beneficiary_id, benefit_type), include_deleted)
            return latest.model_copy() if latest else None

    def append(self, report, expected_last_id=ANY_LAST, include_deleted=True):
        key = report.slot_key()
        with self._lock:
            if expected_last_id is not ANY_LAST:
                latest = self._latest(key, include_deleted)
                current_id = latest.id if latest else None
                if current_id != expected_last_id:
                    logger.info(
                        "Conditional append rejected",
                        extra={"slot": key, "expected_last_id": expected_last_id, "current_last_id": current_id}
                    )
                    raise ConcurrencyConflictError(report.beneficiary_id, report.benefit_type)

            now = self._clock()
            stored = report.model_copy(update={
                "id": generate_object_id(),
                "created_at": now,
                "updated_at": now,
                "deleted_at": None,
                "deleted_by": None
            })
            self._reports[stored.id] = stored
            self._slots.setdefault(key, []).append(stored.id)

        logger.debug("Report appended", extra={"report_id": stored.id, "slot": key})
        return stored.model_copy()

    def update_narrative(self, report_id, fields):
        updates = self._narrative_updates(fields)
        with self._lock:
            current = self._reports.get(report_id)
            if current is None:
                raise NotFoundError("Report", report_id)
            updates["updated_at"] = advance_timestamp(current.updated_at, self._clock())
            updated = current.model_copy(update=updates)
            self._reports[report_id] = updated
            return updated.model_copy()

    def find_by_id(self, report_id, include_deleted=True):
        with self._lock:
            report = self._reports.get(report_id)
            if report is None or (report.is_deleted() and not include_deleted):
                return None
            return report.model_copy()

    def list_by_beneficiary(self, beneficiary_id, benefit_type=None, include_deleted=False):
        with self._lock:
            reports = [
                report.model_copy() for report in self._reports.values()
                if report.beneficiary_id == beneficiary_id
                and (benefit_type is None or report.benefit_type == benefit_type)
                and (include_deleted or not report.is_deleted())
            ]
        return sorted(reports, key=_ordering_key, reverse=True)

    def soft_delete(self, report_id, deleted_by=None):
        with self._lock:
            current = self._reports.get(report_id)
            if current is None:
                raise NotFoundError("Report", report_id)
            if current.is_deleted():
                return current.model_copy()
            now = advance_timestamp(current.updated_at, self._clock())
            deleted = current.model_copy(update={
                "deleted_at": now,
                "deleted_by": deleted_by,
                "updated_at": now
            })
            self._reports[report_id] = deleted
            return deleted.model_copy()

    def __len__(self):
        with self._lock:
            return len(self._reports)


class MongoBenefitLedger(BenefitLedger):
    """
    MongoDB-backed ledger.

    Reports live in ``reports``. Each (beneficiary, benefit type) pair has a
    document in ``ledger_slots`` holding the id of its last delivery and a
    version counter; appends compare-and-set that document and insert the
    report inside one transaction, so a stale writer aborts instead of
    appending.
    """

    reports_collection = "reports"
    slots_collection = "ledger_slots"

    # BSON datetimes have millisecond precision
    timestamp_resolution = timedelta(milliseconds=1)

    # Re-reads allowed when a concurrent writer moves updatedAt first
    max_write_attempts = 5

    def __init__(self, mongo_service: MongoDBService, clock: Callable[[], datetime] = utcnow):
        self.mongo_service = mongo_service
        self._clock = clock

    @property
    def reports(self):
        return self.mongo_service.get_collection(self.reports_collection)

    @property
    def slots(self):
        return self.mongo_service.get_collection(self.slots_collection)

    def _now(self) -> datetime:
        now = self._clock()
        return now.replace(microsecond=(now.microsecond // 1000) * 1000)

    @staticmethod
    def _object_id(report_id: str) -> Optional[ObjectId]:
        try:
            return ObjectId(report_id)
        except (InvalidId, TypeError):
            return None

    @staticmethod
    def _slot_query(beneficiary_id: str, benefit_type: BenefitType, include_deleted: bool) -> Dict[str, Any]:
        query = {"beneficiaryId": beneficiary_id, "benefitType": BenefitType(benefit_type).value}
        if not include_deleted:
            query["deletedAt"] = None
        return query

    def _find_latest(self, beneficiary_id, benefit_type, include_deleted, session=None) -> Optional[Report]:
        document = self.reports.find_one(
            self._slot_query(beneficiary_id, benefit_type, include_deleted),
            sort=[("providedAt", DESCENDING), ("createdAt", DESCENDING)],
            session=session
        )
        return Report.from_document(document) if document else None

    def last_delivery(self, beneficiary_id, benefit_type, include_deleted=True):
        with tracer.start_as_current_span("ledger.last_delivery") as span:
            span.set_attributes({
                "db.collection": self.reports_collection,
                "db.operation": "find_one",
                "ledger.benefit_type": BenefitType(benefit_type).value
            })
            latest = self._find_latest(beneficiary_id, benefit_type, include_deleted)
            span.set_attribute("db.found", latest is not None)
            return latest

    def append(self, report, expected_last_id=ANY_LAST, include_deleted=True):
        key = report.slot_key()
        now = self._now()
        stored = report.model_copy(update={
            "id": generate_object_id(),
            "created_at": now,
            "updated_at": now,
            "deleted_at": None,
            "deleted_by": None
        })

        def _write(session):
            if expected_last_id is not ANY_LAST:
                latest = self._find_latest(
                    report.beneficiary_id, report.benefit_type, include_deleted, session=session
                )
                current_id = latest.id if latest else None
                if current_id != expected_last_id:
                    raise ConcurrencyConflictError(report.beneficiary_id, report.benefit_type)

            # Touching the slot document makes concurrent transactions on the
            # same pair conflict at commit time
            self.slots.find_one_and_update(
                {"_id": key},
                {"$set": {"lastReportId": stored.id, "updatedAt": now}, "$inc": {"version": 1}},
                upsert=True,
                session=session,
                return_document=ReturnDocument.AFTER
            )
            self.reports.insert_one(stored.to_document(), session=session)

        with tracer.start_as_current_span("ledger.append") as span:
            span.set_attributes({
                "db.collection": self.reports_collection,
                "db.operation": "insert_one",
                "ledger.slot": key
            })
            try:
                with self.mongo_service.client.start_session() as session:
                    session.with_transaction(_write)
            except ConcurrencyConflictError:
                span.set_attribute("ledger.conflict", True)
                raise
            except DuplicateKeyError as e:
                span.set_attribute("ledger.conflict", True)
                raise ConcurrencyConflictError(report.beneficiary_id, report.benefit_type) from e
            except OperationFailure as e:
                if e.has_error_label("TransientTransactionError") or e.code == 112:
                    span.set_attribute("ledger.conflict", True)
                    raise ConcurrencyConflictError(report.beneficiary_id, report.benefit_type) from e
                raise

        logger.info("Report appended", extra={"report_id": stored.id, "slot": key})
        return stored

    def _guarded_update(self, report_id, operation, build_changes):
        """
        Write ``$set`` changes only if ``updatedAt`` still holds the value read.

        ``build_changes(current)`` returns the fields to set, or None when the
        stored report already satisfies the request. When a concurrent writer
        moves ``updatedAt`` first the filter misses, the report is re-read and
        the changes are rebuilt on top of the newer timestamp.
        """
        object_id = self._object_id(report_id)
        with tracer.start_as_current_span(f"ledger.{operation}") as span:
            span.set_attributes({"db.collection": self.reports_collection, "db.operation": "find_one_and_update"})
            for attempt in range(1, self.max_write_attempts + 1):
                current = self.find_by_id(report_id) if object_id else None
                if current is None:
                    raise NotFoundError("Report", report_id)
                changes = build_changes(current)
                if changes is None:
                    return current

                document = self.reports.find_one_and_update(
                    {"_id": object_id, "updatedAt": current.updated_at},
                    {"$set": changes},
                    return_document=ReturnDocument.AFTER
                )
                if document is not None:
                    span.set_attribute("ledger.write_attempts", attempt)
                    return Report.from_document(document)

                logger.debug(
                    "Report changed concurrently, re-reading",
                    extra={"report_id": report_id, "operation": operation, "attempt": attempt}
                )

            span.set_attribute("ledger.conflict", True)
            raise ConcurrencyConflictError(current.beneficiary_id, current.benefit_type)

    def update_narrative(self, report_id, fields):
        updates = self._narrative_updates(fields)
        narrative = {("socialWorker" if name == "social_worker" else name): value for name, value in updates.items()}

        def _changes(current):
            return {
                "updatedAt": advance_timestamp(current.updated_at, self._now(), self.timestamp_resolution),
                **narrative
            }

        return self._guarded_update(report_id, "update_narrative", _changes)

    def find_by_id(self, report_id, include_deleted=True):
        object_id = self._object_id(report_id)
        if object_id is None:
            return None
        query = {"_id": object_id}
        if not include_deleted:
            query["deletedAt"] = None
        document = self.reports.find_one(query)
        return Report.from_document(document) if document else None

    def list_by_beneficiary(self, beneficiary_id, benefit_type=None, include_deleted=False):
        query: Dict[str, Any] = {"beneficiaryId": beneficiary_id}
        if benefit_type is not None:
            query["benefitType"] = BenefitType(benefit_type).value
        if not include_deleted:
            query["deletedAt"] = None
        cursor = self.reports.find(query).sort([("providedAt", DESCENDING), ("createdAt", DESCENDING)])
        return [Report.from_document(document) for document in cursor]

    def soft_delete(self, report_id, deleted_by=None):
        def _changes(current):
            if current.is_deleted():
                return None
            now = advance_timestamp(current.updated_at, self._now(), self.timestamp_resolution)
            return {"deletedAt": now, "deletedBy": deleted_by, "updatedAt": now}

        deleted = self._guarded_update(report_id, "soft_delete", _changes)
        logger.info("Report soft deleted", extra={"report_id": report_id, "deleted_by": deleted_by})
        return deleted

    def health_check(self):
        return self.mongo_service.health_check()
