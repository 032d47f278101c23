# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Models package - Pydantic schemas and data models for the benefit ledger.
"""

# Base models
from .base import BaseEntity, generate_object_id, utcnow

# Enumerations
from .enums import BenefitType, ReportAction

# Core entities
from .entities import Report, NARRATIVE_FIELDS, IMMUTABLE_FIELDS, slot_key

# Request models
from .requests import (
    RegisterReportRequest,
    UpdateNarrativeRequest,
    EligibilityQuery,
    ReportListQuery,
    SoftDeleteRequest
)

__all__ = [
    "BaseEntity",
    "generate_object_id",
    "utcnow",
    "BenefitType",
    "ReportAction",
    "Report",
    "NARRATIVE_FIELDS",
    "IMMUTABLE_FIELDS",
    "slot_key",
    "RegisterReportRequest",
    "UpdateNarrativeRequest",
    "EligibilityQuery",
    "ReportListQuery",
    "SoftDeleteRequest"
]
