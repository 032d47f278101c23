# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Core entity models for the benefit eligibility ledger.
"""

from datetime import date, datetime, time, timezone
from typing import Optional, Dict, Any
from bson import ObjectId
from pydantic import Field, field_validator
from .base import BaseEntity
from .enums import BenefitType


# Fields that may be edited after a delivery has been recorded
NARRATIVE_FIELDS = ("reason", "social_worker")

# Identity and eligibility anchors, fixed at registration
IMMUTABLE_FIELDS = ("beneficiary_id", "benefit_type", "provided_at")

# Response keys accepted in place of field names on update
RESPONSE_FIELD_NAMES = {
    "beneficiaryId": "beneficiary_id",
    "benefitType": "benefit_type",
    "providedAt": "provided_at",
    "socialWorker": "social_worker",
    "createdAt": "created_at",
    "lastUpdatedAt": "updated_at",
    "deletedAt": "deleted_at",
}


class Report(BaseEntity):
    """A benefit delivery record in the ledger."""

    beneficiary_id: str = Field(..., min_length=1, description="Opaque beneficiary identifier")
    benefit_type: BenefitType = Field(..., description="Delivered benefit type")
    reason: str = Field(..., max_length=2000, description="Why the benefit was granted")
    social_worker: str = Field(..., max_length=200, description="Social worker or psychologist responsible")
    provided_at: date = Field(..., description="Date the benefit was handed over")

    @field_validator('provided_at', mode='before')
    @classmethod
    def validate_provided_at(cls, v):
        """Accept datetimes (as stored by MongoDB) and keep only the date."""
        if isinstance(v, datetime):
            return v.date()
        return v

    @field_validator('reason', 'social_worker')
    @classmethod
    def validate_narrative(cls, v):
        """Narrative fields cannot be blank."""
        if not v.strip():
            raise ValueError('Field cannot be empty')
        return v.strip()

    @property
    def last_updated_at(self) -> datetime:
        return self.updated_at

    def slot_key(self) -> str:
        """Key of the (beneficiary, benefit type) ledger slot."""
        return slot_key(self.beneficiary_id, self.benefit_type)

    def to_document(self) -> Dict[str, Any]:
        """Convert to a MongoDB document."""
        return {
            "_id": ObjectId(self.id),
            "beneficiaryId": self.beneficiary_id,
            "benefitType": self.benefit_type.value,
            "reason": self.reason,
            "socialWorker": self.social_worker,
            # BSON has no date type
            "providedAt": datetime.combine(self.provided_at, time.min, tzinfo=timezone.utc),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "deletedAt": self.deleted_at,
            "deletedBy": self.deleted_by,
            "schemaVersion": self.schema_version
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Report":
        """Build a report from a MongoDB document."""
        return cls(
            id=str(document["_id"]),
            beneficiary_id=document["beneficiaryId"],
            benefit_type=document["benefitType"],
            reason=document["reason"],
            social_worker=document["socialWorker"],
            provided_at=document["providedAt"],
            created_at=document["createdAt"],
            updated_at=document["updatedAt"],
            deleted_at=document.get("deletedAt"),
            deleted_by=document.get("deletedBy"),
            schema_version=document.get("schemaVersion", 1)
        )

    def to_response(self) -> Dict[str, Any]:
        """JSON-friendly representation for API responses."""
        return {
            "id": self.id,
            "beneficiaryId": self.beneficiary_id,
            "benefitType": self.benefit_type.value,
            "reason": self.reason,
            "socialWorker": self.social_worker,
            "providedAt": self.provided_at.isoformat(),
            "createdAt": self.created_at.isoformat(),
            "lastUpdatedAt": self.updated_at.isoformat(),
            "deletedAt": self.deleted_at.isoformat() if self.deleted_at else None
        }


def slot_key(beneficiary_id: str, benefit_type: BenefitType) -> str:
    """Key of the (beneficiary, benefit type) ledger slot."""
    return f"{beneficiary_id}:{BenefitType(benefit_type).value}"


def report_snapshot(report: Optional[Report]) -> Optional[Dict[str, Any]]:
    """Audit-friendly snapshot of a report."""
    if report is None:
        return None
    return report.model_dump(mode="json")
