# SPDX-License-Identifier: Apache-2.0

"""
Eligibility domain logic for benefit cooldowns.

This module contains pure functions and immutable value objects: calendar
month arithmetic, the per-benefit-type policy table and the eligibility
decision. Nothing here touches storage.
"""

import calendar
import os
from dataclasses import dataclass, field
from datetime import date, datetime
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

from models.enums import BenefitType
from .errors import ConfigurationError


DEFAULT_COOLDOWN_MONTHS: Dict[BenefitType, int] = {
    BenefitType.MONTHLY_BASKET: 1,
    BenefitType.QUARTERLY_BASKET: 3,
    BenefitType.BIRTH_KIT: 9,
    BenefitType.COOKING_GAS: 2,
    BenefitType.FUNERAL_AID: 12,
}


def add_months(value: date, months: int) -> date:
    """
    Advance a date by whole calendar months.

    The day of month is kept when the target month has it, otherwise it is
    clamped to the last day of that month (2025-01-31 + 1 -> 2025-02-28).
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def as_date(value: Union[date, datetime]) -> date:
    """Normalise a date or datetime to a calendar date."""
    if isinstance(value, datetime):
        return value.date()
    return value


@dataclass(frozen=True)
class EligibilityPolicy:
    """Cooldown rule for a single benefit type."""
    benefit_type: BenefitType
    cooldown_months: int

    def next_eligible_date(self, last_provided_at: date) -> date:
        return add_months(last_provided_at, self.cooldown_months)

    def is_eligible(self, last_provided_at: date, as_of: date) -> bool:
        return as_of >= self.next_eligible_date(last_provided_at)


@dataclass(frozen=True)
class EligibilityDecision:
    """Point-in-time eligibility answer. Never persisted."""
    eligible: bool
    next_eligible_date: Optional[date] = None
    last_delivery_date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eligible": self.eligible,
            "nextEligibleDate": self.next_eligible_date.isoformat() if self.next_eligible_date else None,
            "lastDeliveryDate": self.last_delivery_date.isoformat() if self.last_delivery_date else None
        }


def decide(
    policy: EligibilityPolicy,
    last_provided_at: Optional[date],
    as_of: Union[date, datetime]
) -> EligibilityDecision:
    """
    Compute the eligibility decision for a single benefit type.

    Args:
        policy: Policy of the benefit type being evaluated
        last_provided_at: Date of the most recent delivery, None if never delivered
        as_of: Evaluation date

    Returns:
        EligibilityDecision for ``as_of``
    """
    if last_provided_at is None:
        return EligibilityDecision(eligible=True)

    next_date = policy.next_eligible_date(last_provided_at)
    return EligibilityDecision(
        eligible=as_date(as_of) >= next_date,
        next_eligible_date=next_date,
        last_delivery_date=last_provided_at
    )


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass(frozen=True)
class EligibilityConfig:
    """
    Eligibility configuration, built once at process start.

    ``cooldown_months`` must map every BenefitType to a positive number of
    months. ``count_deleted_in_eligibility`` decides whether soft-deleted
    deliveries still block a new delivery inside their cooldown window.
    """
    cooldown_months: Mapping[BenefitType, int] = field(
        default_factory=lambda: dict(DEFAULT_COOLDOWN_MONTHS)
    )
    count_deleted_in_eligibility: bool = True

    def __post_init__(self):
        normalised = {}
        for key, months in dict(self.cooldown_months).items():
            try:
                benefit_type = BenefitType(key)
            except ValueError:
                raise ConfigurationError(f"Unknown benefit type in cooldown configuration: {key!r}")
            if isinstance(months, bool) or not isinstance(months, int):
                raise ConfigurationError(
                    f"Cooldown for {benefit_type.value} must be an integer, got {months!r}"
                )
            if months < 1:
                raise ConfigurationError(
                    f"Cooldown for {benefit_type.value} must be at least 1 month, got {months}"
                )
            normalised[benefit_type] = months

        missing = [t.value for t in BenefitType if t not in normalised]
        if missing:
            raise ConfigurationError(f"Missing cooldown configuration for: {', '.join(missing)}")

        object.__setattr__(self, 'cooldown_months', MappingProxyType(normalised))

    @classmethod
    def from_mapping(
        cls,
        cooldowns: Mapping[Any, int],
        count_deleted_in_eligibility: bool = True
    ) -> "EligibilityConfig":
        """Build a config from a mapping keyed by BenefitType or its value."""
        return cls(
            cooldown_months=dict(cooldowns),
            count_deleted_in_eligibility=count_deleted_in_eligibility
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EligibilityConfig":
        """
        Build a config from ``BENEFIT_COOLDOWN_<TYPE>`` variables.

        Unset types fall back to DEFAULT_COOLDOWN_MONTHS.
        """
        environ = os.environ if environ is None else environ
        cooldowns = {}
        for benefit_type in BenefitType:
            raw = environ.get(f"BENEFIT_COOLDOWN_{benefit_type.name}")
            if raw is None:
                cooldowns[benefit_type] = DEFAULT_COOLDOWN_MONTHS[benefit_type]
                continue
            try:
                cooldowns[benefit_type] = int(raw)
            except ValueError:
                raise ConfigurationError(
                    f"BENEFIT_COOLDOWN_{benefit_type.name} must be an integer, got {raw!r}"
                )

        count_deleted = _parse_bool(environ.get('COUNT_DELETED_IN_ELIGIBILITY', 'true'))
        return cls(cooldown_months=cooldowns, count_deleted_in_eligibility=count_deleted)


class PolicyTable:
    """Closed dispatch table from benefit type to its policy."""

    def __init__(self, config: EligibilityConfig):
        self._policies = MappingProxyType({
            benefit_type: EligibilityPolicy(benefit_type, months)
            for benefit_type, months in config.cooldown_months.items()
        })

    def policy_for(self, benefit_type: BenefitType) -> EligibilityPolicy:
        try:
            return self._policies[BenefitType(benefit_type)]
        except (KeyError, ValueError):
            raise ConfigurationError(f"No eligibility policy for benefit type {benefit_type!r}")

    def cooldown_in_months(self, benefit_type: BenefitType) -> int:
        return self.policy_for(benefit_type).cooldown_months

    def next_eligible_date(self, last_provided_at: date, benefit_type: BenefitType) -> date:
        return self.policy_for(benefit_type).next_eligible_date(last_provided_at)

    def __iter__(self):
        return iter(self._policies.values())

    def __len__(self):
        return len(self._policies)
