# SPDX-License-Identifier: Apache-2.0

"""
Unit tests for eligibility domain logic: month arithmetic, policies and
configuration.
"""

import pytest
from datetime import date, datetime

from domain.eligibility import (
    DEFAULT_COOLDOWN_MONTHS, EligibilityConfig, EligibilityDecision,
    EligibilityPolicy, PolicyTable, add_months, decide
)
from domain.errors import ConfigurationError
from models.enums import BenefitType


class TestAddMonths:
    """Test calendar month arithmetic."""

    def test_keeps_day_of_month(self):
        assert add_months(date(2025, 1, 15), 1) == date(2025, 2, 15)
        assert add_months(date(2025, 1, 1), 3) == date(2025, 4, 1)

    def test_clamps_to_month_end(self):
        assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
        assert add_months(date(2025, 3, 31), 1) == date(2025, 4, 30)
        assert add_months(date(2025, 8, 31), 3) == date(2025, 11, 30)

    def test_leap_year_february(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2024, 2, 29), 12) == date(2025, 2, 28)

    def test_crosses_year_boundary(self):
        assert add_months(date(2025, 11, 30), 3) == date(2026, 2, 28)
        assert add_months(date(2025, 12, 15), 1) == date(2026, 1, 15)


class TestEligibilityPolicy:
    """Test single-type policy behaviour."""

    def test_next_eligible_date(self):
        policy = EligibilityPolicy(BenefitType.QUARTERLY_BASKET, 3)
        assert policy.next_eligible_date(date(2025, 1, 1)) == date(2025, 4, 1)

    def test_window_is_half_open(self):
        policy = EligibilityPolicy(BenefitType.MONTHLY_BASKET, 1)
        delivered = date(2025, 1, 31)

        assert not policy.is_eligible(delivered, date(2025, 1, 31))
        assert not policy.is_eligible(delivered, date(2025, 2, 27))
        assert policy.is_eligible(delivered, date(2025, 2, 28))
        assert policy.is_eligible(delivered, date(2025, 3, 10))

    def test_policy_is_immutable(self):
        policy = EligibilityPolicy(BenefitType.BIRTH_KIT, 9)
        with pytest.raises(Exception):
            policy.cooldown_months = 1


class TestDecide:
    """Test the pure decision function."""

    def test_no_prior_delivery_is_eligible(self):
        policy = EligibilityPolicy(BenefitType.FUNERAL_AID, 12)
        decision = decide(policy, None, date(2025, 6, 1))

        assert decision == EligibilityDecision(eligible=True)
        assert decision.next_eligible_date is None
        assert decision.last_delivery_date is None

    def test_inside_cooldown(self):
        policy = EligibilityPolicy(BenefitType.QUARTERLY_BASKET, 3)
        decision = decide(policy, date(2025, 1, 1), date(2025, 3, 15))

        assert decision.eligible is False
        assert decision.next_eligible_date == date(2025, 4, 1)
        assert decision.last_delivery_date == date(2025, 1, 1)

    def test_datetime_as_of_uses_its_date(self):
        policy = EligibilityPolicy(BenefitType.QUARTERLY_BASKET, 3)
        decision = decide(policy, date(2025, 1, 1), datetime(2025, 4, 1, 0, 5))
        assert decision.eligible is True

    def test_to_dict(self):
        decision = EligibilityDecision(False, date(2025, 4, 1), date(2025, 1, 1))
        assert decision.to_dict() == {
            "eligible": False,
            "nextEligibleDate": "2025-04-01",
            "lastDeliveryDate": "2025-01-01"
        }


class TestEligibilityConfig:
    """Test configuration validation."""

    def test_defaults_cover_every_type(self):
        config = EligibilityConfig()
        assert set(config.cooldown_months) == set(BenefitType)
        assert config.count_deleted_in_eligibility is True

    def test_accepts_string_keys(self):
        mapping = {t.value: months for t, months in DEFAULT_COOLDOWN_MONTHS.items()}
        mapping["monthly_basket"] = 3
        config = EligibilityConfig.from_mapping(mapping)
        assert config.cooldown_months[BenefitType.MONTHLY_BASKET] == 3

    def test_missing_type_is_rejected(self):
        mapping = dict(DEFAULT_COOLDOWN_MONTHS)
        del mapping[BenefitType.BIRTH_KIT]

        with pytest.raises(ConfigurationError) as exc_info:
            EligibilityConfig.from_mapping(mapping)
        assert "birth_kit" in str(exc_info.value)

    def test_unknown_type_is_rejected(self):
        mapping = dict(DEFAULT_COOLDOWN_MONTHS)
        mapping["school_uniform"] = 6

        with pytest.raises(ConfigurationError):
            EligibilityConfig.from_mapping(mapping)

    @pytest.mark.parametrize("months", [0, -1, 1.5, "3", True])
    def test_invalid_cooldown_is_rejected(self, months):
        mapping = dict(DEFAULT_COOLDOWN_MONTHS)
        mapping[BenefitType.COOKING_GAS] = months

        with pytest.raises(ConfigurationError):
            EligibilityConfig.from_mapping(mapping)

    def test_mapping_cannot_be_mutated(self):
        config = EligibilityConfig()
        with pytest.raises(TypeError):
            config.cooldown_months[BenefitType.MONTHLY_BASKET] = 6

    def test_from_env(self):
        config = EligibilityConfig.from_env({
            "BENEFIT_COOLDOWN_MONTHLY_BASKET": "3",
            "COUNT_DELETED_IN_ELIGIBILITY": "false"
        })

        assert config.cooldown_months[BenefitType.MONTHLY_BASKET] == 3
        assert config.cooldown_months[BenefitType.QUARTERLY_BASKET] == 3
        assert config.cooldown_months[BenefitType.FUNERAL_AID] == DEFAULT_COOLDOWN_MONTHS[BenefitType.FUNERAL_AID]
        assert config.count_deleted_in_eligibility is False

    def test_from_env_rejects_garbage(self):
        with pytest.raises(ConfigurationError):
            EligibilityConfig.from_env({"BENEFIT_COOLDOWN_COOKING_GAS": "two"})


class TestPolicyTable:
    """Test the benefit type dispatch table."""

    def test_one_policy_per_type(self, eligibility_config):
        table = PolicyTable(eligibility_config)

        assert len(table) == len(BenefitType)
        assert {policy.benefit_type for policy in table} == set(BenefitType)

    def test_lookup(self, eligibility_config):
        table = PolicyTable(eligibility_config)

        assert table.cooldown_in_months(BenefitType.QUARTERLY_BASKET) == 3
        assert table.cooldown_in_months("cooking_gas") == 2
        assert table.next_eligible_date(date(2025, 1, 31), BenefitType.MONTHLY_BASKET) == date(2025, 2, 28)

    def test_unknown_type_is_configuration_error(self, eligibility_config):
        table = PolicyTable(eligibility_config)
        with pytest.raises(ConfigurationError):
            table.policy_for("school_uniform")
