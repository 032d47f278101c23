# SPDX-License-Identifier: Apache-2.0

"""
Eligibility engine: answers "can beneficiary X receive benefit Y on date T?".
"""

import logging
from datetime import date, datetime
from typing import Optional, Union

from opentelemetry import trace

from domain.eligibility import EligibilityConfig, EligibilityDecision, PolicyTable, as_date, decide
from models.entities import Report
from models.enums import BenefitType
from .ledger import BenefitLedger

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class EligibilityEngine:
    """
    Read-only eligibility evaluation over the ledger.

    A positive decision is a snapshot, not a reservation: writers must
    re-evaluate inside their own exclusive section.
    """

    def __init__(self, ledger: BenefitLedger, config: EligibilityConfig):
        self.ledger = ledger
        self.config = config
        self.policies = PolicyTable(config)

    @property
    def count_deleted(self) -> bool:
        return self.config.count_deleted_in_eligibility

    def last_delivery(self, beneficiary_id: str, benefit_type: BenefitType) -> Optional[Report]:
        """Last delivery relevant to eligibility, honoring the soft-delete flag."""
        return self.ledger.last_delivery(
            beneficiary_id, benefit_type, include_deleted=self.count_deleted
        )

    def decide_from(
        self,
        last: Optional[Report],
        benefit_type: BenefitType,
        as_of: Union[date, datetime]
    ) -> EligibilityDecision:
        """Decision for an already fetched last delivery."""
        policy = self.policies.policy_for(benefit_type)
        return decide(policy, last.provided_at if last else None, as_of)

    def evaluate(
        self,
        beneficiary_id: str,
        benefit_type: BenefitType,
        as_of: Union[date, datetime]
    ) -> EligibilityDecision:
        """
        Evaluate eligibility as of a date.

        Args:
            beneficiary_id: Beneficiary identifier
            benefit_type: Benefit type being requested
            as_of: Evaluation date (datetimes are truncated to their date)

        Returns:
            EligibilityDecision computed from the current ledger state
        """
        benefit_type = BenefitType(benefit_type)
        as_of = as_date(as_of)

        with tracer.start_as_current_span("eligibility.evaluate") as span:
            span.set_attributes({
                "eligibility.beneficiary_id": beneficiary_id,
                "eligibility.benefit_type": benefit_type.value,
                "eligibility.as_of": as_of.isoformat()
            })

            last = self.last_delivery(beneficiary_id, benefit_type)
            decision = self.decide_from(last, benefit_type, as_of)

            span.set_attribute("eligibility.eligible", decision.eligible)
            logger.debug(
                "Eligibility evaluated",
                extra={
                    "beneficiary_id": beneficiary_id,
                    "benefit_type": benefit_type.value,
                    "as_of": as_of.isoformat(),
                    "eligible": decision.eligible,
                    "next_eligible_date": decision.next_eligible_date.isoformat() if decision.next_eligible_date else None
                }
            )
            return decision
