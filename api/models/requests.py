# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Request models for API input validation.
"""

from datetime import date
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from .enums import BenefitType


class RegisterReportRequest(BaseModel):
    """Request model for registering a benefit delivery."""

    model_config = ConfigDict(extra='forbid')

    beneficiary_id: str = Field(..., min_length=1, description="Beneficiary identifier")
    benefit_type: BenefitType = Field(..., description="Benefit type delivered")
    reason: str = Field(..., min_length=1, max_length=2000, description="Why the benefit was granted")
    social_worker: str = Field(..., min_length=1, max_length=200, description="Responsible social worker")
    provided_at: date = Field(..., description="Date the benefit was handed over")

    @field_validator('reason', 'social_worker', 'beneficiary_id')
    @classmethod
    def validate_not_blank(cls, v):
        if not v.strip():
            raise ValueError('Field cannot be empty')
        return v.strip()


class UpdateNarrativeRequest(BaseModel):
    """Request model for editing the narrative fields of a report."""

    model_config = ConfigDict(extra='forbid')

    reason: Optional[str] = Field(None, min_length=1, max_length=2000, description="New reason")
    social_worker: Optional[str] = Field(None, min_length=1, max_length=200, description="New social worker")

    @field_validator('reason', 'social_worker')
    @classmethod
    def validate_not_blank(cls, v):
        if v is not None and not v.strip():
            raise ValueError('Field cannot be empty')
        return v.strip() if v is not None else v


class EligibilityQuery(BaseModel):
    """Query parameters for the eligibility endpoint."""

    as_of: Optional[date] = Field(None, description="Evaluation date (defaults to today)")


class ReportListQuery(BaseModel):
    """Query parameters for the beneficiary history endpoint."""

    benefit_type: Optional[BenefitType] = Field(None, description="Only this benefit type")
    include_deleted: bool = Field(False, description="Include soft-deleted reports")


class SoftDeleteRequest(BaseModel):
    """Optional body for report removal."""

    deleted_by: Optional[str] = Field(None, max_length=200, description="Who removed the report")
