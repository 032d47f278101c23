# SPDX-License-Identifier: Apache-2.0

"""
Report use cases: registering deliveries and editing their narrative.

Registration is the only write that consumes an eligibility window. It
re-evaluates eligibility inside a per-(beneficiary, benefit type) lock and
appends conditionally on the last delivery it observed, retrying with
exponential backoff when a concurrent writer wins the slot.
"""

import os
import random
import time
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from domain.eligibility import as_date
from domain.errors import (
    ConcurrencyConflictError, ImmutableFieldError, NotEligibleError,
    NotFoundError, UnknownBeneficiaryError
)
from models.entities import IMMUTABLE_FIELDS, RESPONSE_FIELD_NAMES, Report, report_snapshot, slot_key
from models.enums import BenefitType, ReportAction
from models.requests import UpdateNarrativeRequest
from .audit import AuditService
from .eligibility import EligibilityEngine
from .locks import SlotLockManager

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Managed by the ledger, never by callers
SYSTEM_FIELDS = ("id", "created_at", "updated_at", "deleted_at", "deleted_by", "schema_version")


def _record_audit(audit_service: Optional[AuditService], report_id: str, action: ReportAction, **entry: Any) -> None:
    """Audit a committed ledger write. The write stands when the entry cannot be stored."""
    if audit_service is None:
        return
    try:
        audit_service.log_action(entity="report", entity_id=report_id, action=action.value, **entry)
    except Exception as e:
        span = trace.get_current_span()
        span.record_exception(e)
        span.set_status(Status(StatusCode.ERROR, "audit entry not stored"))
        logger.error(
            "Failed to store audit entry for committed report write",
            extra={"report_id": report_id, "action": action.value, "error": str(e)}
        )


@dataclass
class RegistrarConfig:
    """Retry settings for registrations that hit a concurrent writer."""
    max_retries: int = 3
    retry_delay: float = 0.05

    @classmethod
    def from_env(cls) -> "RegistrarConfig":
        return cls(
            max_retries=int(os.getenv('REGISTER_MAX_RETRIES', '3')),
            retry_delay=float(os.getenv('REGISTER_RETRY_DELAY', '0.05'))
        )


class ReportRegistrar:
    """Transactional registration of benefit deliveries."""

    def __init__(
        self,
        engine: EligibilityEngine,
        locks: Optional[SlotLockManager] = None,
        config: Optional[RegistrarConfig] = None,
        beneficiary_exists: Optional[Callable[[str], bool]] = None,
        audit_service: Optional[AuditService] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.engine = engine
        self.ledger = engine.ledger
        self.locks = locks or SlotLockManager()
        self.config = config or RegistrarConfig()
        self.beneficiary_exists = beneficiary_exists
        self.audit_service = audit_service
        self._sleep = sleep

    def register(
        self,
        beneficiary_id: str,
        benefit_type: BenefitType,
        reason: str,
        social_worker: str,
        provided_at: Union[date, datetime]
    ) -> Report:
        """
        Record a delivery if the beneficiary is eligible on ``provided_at``.

        Eligibility is evaluated as of the delivery date, so deliveries that
        already happened can be registered later.

        Raises:
            UnknownBeneficiaryError: beneficiary rejected by the identity layer
            NotEligibleError: delivery falls inside the cooldown window
            ConcurrencyConflictError: slot kept changing after all retries
        """
        benefit_type = BenefitType(benefit_type)
        provided_at = as_date(provided_at)

        with tracer.start_as_current_span(
            "reports.register",
            attributes={
                "report.beneficiary_id": beneficiary_id,
                "report.benefit_type": benefit_type.value,
                "report.provided_at": provided_at.isoformat()
            }
        ) as span:
            try:
                if self.beneficiary_exists is not None and not self.beneficiary_exists(beneficiary_id):
                    raise UnknownBeneficiaryError(beneficiary_id)

                candidate = Report(
                    beneficiary_id=beneficiary_id,
                    benefit_type=benefit_type,
                    reason=reason,
                    social_worker=social_worker,
                    provided_at=provided_at
                )
                report = self._register_with_retry(candidate)

            except NotEligibleError as e:
                span.set_status(Status(StatusCode.ERROR, "not eligible"))
                logger.info(
                    "Delivery rejected: beneficiary not eligible",
                    extra={
                        "beneficiary_id": beneficiary_id,
                        "benefit_type": benefit_type.value,
                        "provided_at": provided_at.isoformat(),
                        "next_eligible_date": e.next_eligible_date.isoformat() if e.next_eligible_date else None
                    }
                )
                raise
            except Exception as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

            span.set_attribute("report.id", report.id)
            logger.info(
                "Delivery registered",
                extra={
                    "report_id": report.id,
                    "beneficiary_id": beneficiary_id,
                    "benefit_type": benefit_type.value,
                    "provided_at": provided_at.isoformat(),
                    "social_worker": report.social_worker
                }
            )

        _record_audit(
            self.audit_service, report.id, ReportAction.REGISTER,
            actor=report.social_worker,
            after=report_snapshot(report)
        )
        return report

    def _register_with_retry(self, candidate: Report) -> Report:
        """Run the registration attempt, backing off on slot conflicts."""
        for attempt in range(self.config.max_retries + 1):
            try:
                return self._register_once(candidate)
            except ConcurrencyConflictError as e:
                if attempt >= self.config.max_retries:
                    logger.error(
                        "Delivery registration failed after all retries",
                        extra={
                            "slot": candidate.slot_key(),
                            "total_attempts": attempt + 1,
                            "error": str(e)
                        }
                    )
                    raise

                # Exponential backoff with jitter
                delay = self.config.retry_delay * (2 ** attempt) + random.uniform(0, self.config.retry_delay)
                logger.warning(
                    "Slot conflict during registration, retrying",
                    extra={
                        "slot": candidate.slot_key(),
                        "attempt": attempt + 1,
                        "retry_delay": delay
                    }
                )
                self._sleep(delay)

        # Unreachable: the last attempt either returns or raises
        raise ConcurrencyConflictError(candidate.beneficiary_id, candidate.benefit_type)

    def _register_once(self, candidate: Report) -> Report:
        beneficiary_id = candidate.beneficiary_id
        benefit_type = candidate.benefit_type
        provided_at = candidate.provided_at

        # Cheap rejection before taking the lock
        snapshot = self.engine.evaluate(beneficiary_id, benefit_type, provided_at)
        if not snapshot.eligible:
            raise NotEligibleError(benefit_type, snapshot.next_eligible_date, snapshot.last_delivery_date)

        with self.locks.hold(slot_key(beneficiary_id, benefit_type)):
            last = self.engine.last_delivery(beneficiary_id, benefit_type)
            decision = self.engine.decide_from(last, benefit_type, provided_at)
            if not decision.eligible:
                raise NotEligibleError(benefit_type, decision.next_eligible_date, decision.last_delivery_date)

            return self.ledger.append(
                candidate,
                expected_last_id=last.id if last else None,
                include_deleted=self.engine.count_deleted
            )


def _same_value(name: str, current: Any, requested: Any) -> bool:
    """Whether a requested immutable value equals the stored one."""
    try:
        if name == "benefit_type":
            return BenefitType(requested) == current
        if name == "provided_at":
            if isinstance(requested, str):
                requested = date.fromisoformat(requested)
            return as_date(requested) == current
    except (TypeError, ValueError):
        return False
    return requested == current


class ReportUpdater:
    """Edits of narrative fields and soft removal of reports."""

    def __init__(self, ledger, audit_service: Optional[AuditService] = None):
        self.ledger = ledger
        self.audit_service = audit_service

    def update_narrative(
        self,
        report_id: str,
        changes: Optional[Mapping[str, Any]] = None,
        **fields: Any
    ) -> Report:
        """
        Update the reason and/or social worker of a report.

        Changes come as a mapping (a request body, where response keys such
        as ``socialWorker`` are accepted too) and/or keyword arguments.

        Identity and eligibility anchors (beneficiary, benefit type, delivery
        date) and ledger-managed fields cannot be changed; passing them with
        a different value raises ImmutableFieldError. ``updated_at`` is
        refreshed on every accepted call, even when nothing changes.

        Raises:
            NotFoundError: report does not exist
            ImmutableFieldError: attempt to change a protected field
            pydantic.ValidationError: unknown field or invalid narrative value
        """
        with tracer.start_as_current_span(
            "reports.update_narrative",
            attributes={"report.id": report_id}
        ) as span:
            current = self.ledger.find_by_id(report_id)
            if current is None:
                span.set_status(Status(StatusCode.ERROR, "Report not found"))
                raise NotFoundError("Report", report_id)

            requested = {
                RESPONSE_FIELD_NAMES.get(name, name): value
                for name, value in {**(changes or {}), **fields}.items()
            }
            protected = set(IMMUTABLE_FIELDS) | set(SYSTEM_FIELDS)
            rejected: List[str] = [
                name for name, value in requested.items()
                if name in protected and (
                    name in SYSTEM_FIELDS or not _same_value(name, getattr(current, name), value)
                )
            ]
            if rejected:
                span.set_status(Status(StatusCode.ERROR, "Immutable field"))
                logger.warning(
                    "Rejected change to immutable report fields",
                    extra={"report_id": report_id, "fields": sorted(rejected)}
                )
                raise ImmutableFieldError(rejected)

            request = UpdateNarrativeRequest.model_validate(
                {name: value for name, value in requested.items() if name not in protected}
            )

            narrative: Dict[str, Any] = {
                name: value for name, value in request.model_dump().items() if value is not None
            }
            updated = self.ledger.update_narrative(report_id, narrative)

            span.set_attribute("report.updated_fields", ",".join(sorted(narrative)))
            logger.info(
                "Report narrative updated",
                extra={
                    "report_id": report_id,
                    "updated_fields": sorted(narrative),
                    "last_updated_at": updated.updated_at.isoformat()
                }
            )

        _record_audit(
            self.audit_service, report_id, ReportAction.UPDATE_NARRATIVE,
            actor=updated.social_worker,
            before=report_snapshot(current),
            after=report_snapshot(updated)
        )
        return updated

    def soft_delete(self, report_id: str, deleted_by: Optional[str] = None) -> Report:
        """
        Mark a report as removed without erasing it from the ledger.

        Whether it still blocks new deliveries is decided by the
        ``count_deleted_in_eligibility`` configuration flag.
        """
        before = self.ledger.find_by_id(report_id)
        if before is None:
            raise NotFoundError("Report", report_id)

        deleted = self.ledger.soft_delete(report_id, deleted_by=deleted_by)
        logger.info("Report removed", extra={"report_id": report_id, "deleted_by": deleted_by})

        _record_audit(
            self.audit_service, report_id, ReportAction.SOFT_DELETE,
            actor=deleted_by,
            before=report_snapshot(before),
            after=report_snapshot(deleted)
        )
        return deleted

    def find_by_id(self, report_id: str) -> Report:
        report = self.ledger.find_by_id(report_id)
        if report is None:
            raise NotFoundError("Report", report_id)
        return report

    def history(
        self,
        beneficiary_id: str,
        benefit_type: Optional[BenefitType] = None,
        include_deleted: bool = False
    ) -> List[Report]:
        return self.ledger.list_by_beneficiary(
            beneficiary_id, benefit_type=benefit_type, include_deleted=include_deleted
        )
