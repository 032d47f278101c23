# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Enumeration types for the benefit eligibility ledger.
"""

from enum import Enum


class BenefitType(str, Enum):
    """Eventual-aid benefit categories, each with its own cooldown."""
    MONTHLY_BASKET = "monthly_basket"
    QUARTERLY_BASKET = "quarterly_basket"
    BIRTH_KIT = "birth_kit"
    COOKING_GAS = "cooking_gas"
    FUNERAL_AID = "funeral_aid"


class ReportAction(str, Enum):
    """Actions recorded in the report audit trail."""
    REGISTER = "register"
    UPDATE_NARRATIVE = "update_narrative"
    SOFT_DELETE = "soft_delete"
