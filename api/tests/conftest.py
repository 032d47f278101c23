# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Pytest configuration and fixtures.
"""

import os
import threading
import pytest
from datetime import date, datetime, timedelta, timezone

# Set test environment
os.environ['ENVIRONMENT'] = 'test'
os.environ['OTEL_ENABLED'] = 'false'
os.environ.setdefault('LEDGER_BACKEND', 'memory')
os.environ.setdefault('LOCK_BACKEND', 'memory')

from domain.eligibility import EligibilityConfig
from models.enums import BenefitType
from models.entities import Report
from services.eligibility import EligibilityEngine
from services.ledger import InMemoryBenefitLedger
from services.locks import SlotLockManager
from services.reports import RegistrarConfig, ReportRegistrar, ReportUpdater


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **kwargs) -> None:
        with self._lock:
            self._now += timedelta(**kwargs)


@pytest.fixture
def clock():
    """Frozen UTC clock starting at 2025-06-15 12:00."""
    return FrozenClock(datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def cooldowns():
    """Cooldown mapping used across tests."""
    return {
        BenefitType.MONTHLY_BASKET: 1,
        BenefitType.QUARTERLY_BASKET: 3,
        BenefitType.BIRTH_KIT: 9,
        BenefitType.COOKING_GAS: 2,
        BenefitType.FUNERAL_AID: 12,
    }


@pytest.fixture
def eligibility_config(cooldowns):
    return EligibilityConfig.from_mapping(cooldowns)


@pytest.fixture
def ledger(clock):
    return InMemoryBenefitLedger(clock=clock)


@pytest.fixture
def engine(ledger, eligibility_config):
    return EligibilityEngine(ledger, eligibility_config)


@pytest.fixture
def registrar(engine):
    return ReportRegistrar(
        engine,
        locks=SlotLockManager(timeout_seconds=5.0),
        config=RegistrarConfig(max_retries=3, retry_delay=0.001),
        sleep=lambda seconds: None
    )


@pytest.fixture
def updater(ledger):
    return ReportUpdater(ledger)


@pytest.fixture
def make_report():
    """Factory for unsaved reports."""
    def _make(
        beneficiary_id="beneficiary-1",
        benefit_type=BenefitType.COOKING_GAS,
        provided_at=date(2025, 6, 1),
        reason="Household without income this month",
        social_worker="Maria Assistente"
    ):
        return Report(
            beneficiary_id=beneficiary_id,
            benefit_type=benefit_type,
            reason=reason,
            social_worker=social_worker,
            provided_at=provided_at
        )
    return _make
