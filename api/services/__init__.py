# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Services package - Storage, locking and the ledger use cases.
"""

from .mongodb import MongoDBService, get_mongodb_service
from .ledger import BenefitLedger, InMemoryBenefitLedger, MongoBenefitLedger
from .locks import SlotLockManager, RedisSlotLockManager, create_lock_manager
from .eligibility import EligibilityEngine
from .reports import ReportRegistrar, ReportUpdater, RegistrarConfig
from .audit import AuditService

__all__ = [
    "MongoDBService",
    "get_mongodb_service",
    "BenefitLedger",
    "InMemoryBenefitLedger",
    "MongoBenefitLedger",
    "SlotLockManager",
    "RedisSlotLockManager",
    "create_lock_manager",
    "EligibilityEngine",
    "ReportRegistrar",
    "ReportUpdater",
    "RegistrarConfig",
    "AuditService"
]
