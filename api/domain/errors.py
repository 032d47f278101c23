# SPDX-License-Identifier: Apache-2.0

"""
Error kinds raised by the eligibility ledger.

Each error carries the HTTP status and problem type the API layer renders,
plus a ``payload`` with the machine-readable details of the failure.
"""

from datetime import date
from typing import Any, Dict, Iterable, Optional


class BenefitError(Exception):
    """Base class for eligibility ledger errors."""

    status_code = 500
    error_type = "application-error"
    title = "Application Error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def payload(self) -> Dict[str, Any]:
        return {}


class NotEligibleError(BenefitError):
    """The beneficiary is still inside the cooldown window for the benefit type."""

    status_code = 409
    error_type = "not-eligible"
    title = "Not Eligible"

    def __init__(
        self,
        benefit_type: Any,
        next_eligible_date: Optional[date],
        last_delivery_date: Optional[date] = None
    ):
        benefit_value = getattr(benefit_type, "value", benefit_type)
        super().__init__(
            f"Beneficiary is not eligible for {benefit_value} until {next_eligible_date}"
        )
        self.benefit_type = benefit_type
        self.next_eligible_date = next_eligible_date
        self.last_delivery_date = last_delivery_date

    @property
    def payload(self) -> Dict[str, Any]:
        return {
            "benefitType": getattr(self.benefit_type, "value", self.benefit_type),
            "nextEligibleDate": self.next_eligible_date.isoformat() if self.next_eligible_date else None,
            "lastDeliveryDate": self.last_delivery_date.isoformat() if self.last_delivery_date else None
        }


class NotFoundError(BenefitError):
    """A report (or another referenced resource) does not exist."""

    status_code = 404
    error_type = "resource-not-found"
    title = "Resource Not Found"

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id

    @property
    def payload(self) -> Dict[str, Any]:
        return {"resource": self.resource, "resourceId": self.resource_id}


class ImmutableFieldError(BenefitError):
    """Attempt to change an identity or eligibility anchor of a report."""

    status_code = 422
    error_type = "immutable-field"
    title = "Immutable Field"

    def __init__(self, fields: Iterable[str]):
        self.fields = sorted(fields)
        super().__init__(f"Fields cannot be changed after registration: {', '.join(self.fields)}")

    @property
    def payload(self) -> Dict[str, Any]:
        return {"fields": self.fields}


class UnknownBeneficiaryError(BenefitError):
    """Registration against a beneficiary the identity layer does not know."""

    status_code = 404
    error_type = "unknown-beneficiary"
    title = "Unknown Beneficiary"

    def __init__(self, beneficiary_id: str):
        super().__init__(f"Beneficiary {beneficiary_id} does not exist")
        self.beneficiary_id = beneficiary_id

    @property
    def payload(self) -> Dict[str, Any]:
        return {"beneficiaryId": self.beneficiary_id}


class ConfigurationError(BenefitError):
    """Invalid or incomplete eligibility configuration."""

    status_code = 500
    error_type = "configuration-error"
    title = "Configuration Error"


class ConcurrencyConflictError(BenefitError):
    """A concurrent writer touched the same (beneficiary, benefit type) slot."""

    status_code = 409
    error_type = "concurrency-conflict"
    title = "Concurrency Conflict"

    def __init__(self, beneficiary_id: str, benefit_type: Any, message: Optional[str] = None):
        benefit_value = getattr(benefit_type, "value", benefit_type)
        super().__init__(
            message or f"Concurrent update detected for {beneficiary_id}/{benefit_value}"
        )
        self.beneficiary_id = beneficiary_id
        self.benefit_type = benefit_type

    @property
    def payload(self) -> Dict[str, Any]:
        return {
            "beneficiaryId": self.beneficiary_id,
            "benefitType": getattr(self.benefit_type, "value", self.benefit_type)
        }
