# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Ledger record base: identity, timestamps and soft delete markers.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict
from bson import ObjectId


def generate_object_id() -> str:
    """New ObjectId in its hex string form."""
    return str(ObjectId())


def utcnow() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def advance_timestamp(
    previous: Optional[datetime],
    now: datetime,
    resolution: timedelta = timedelta(microseconds=1)
) -> datetime:
    """
    Return a timestamp strictly after ``previous``.

    Uses ``now`` when the clock has moved forward, otherwise bumps the
    previous value by one storage resolution step.
    """
    if previous is None or now > previous:
        return now
    return previous + resolution


class BaseEntity(BaseModel):
    """Fields every ledger record carries. Records are removed by marking, never deleted."""

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    id: str = Field(default_factory=generate_object_id, description="Record id (ObjectId hex)")
    created_at: datetime = Field(default_factory=utcnow, description="When the ledger accepted the record")
    updated_at: datetime = Field(default_factory=utcnow, description="Strictly increases on every accepted change")
    deleted_at: Optional[datetime] = Field(None, description="Set when the record is removed")
    deleted_by: Optional[str] = Field(None, description="Actor that removed the record")
    schema_version: int = Field(default=1, description="Document layout version")

    def is_deleted(self) -> bool:
        """True once the record has been removed."""
        return self.deleted_at is not None
