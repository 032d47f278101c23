# SPDX-License-Identifier: Apache-2.0

"""
Tests for narrative updates and soft removal of reports.
"""

import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta
from unittest.mock import Mock

from pydantic import ValidationError

from domain.errors import ImmutableFieldError, NotFoundError
from models.enums import BenefitType, ReportAction
from services.reports import ReportUpdater


@pytest.fixture
def stored(ledger, make_report):
    return ledger.append(make_report(provided_at=date(2025, 6, 1)))


class TestUpdateNarrative:
    """Test narrative field updates."""

    def test_updates_reason(self, updater, stored, clock):
        clock.advance(minutes=10)

        updated = updater.update_narrative(stored.id, reason="Second cylinder, flood damage")

        assert updated.reason == "Second cylinder, flood damage"
        assert updated.social_worker == stored.social_worker
        assert updated.provided_at == stored.provided_at
        assert updated.last_updated_at > stored.last_updated_at

    def test_updates_both_fields(self, updater, stored):
        updated = updater.update_narrative(stored.id, reason="New reason", social_worker="Paulo Lima")

        assert updated.reason == "New reason"
        assert updated.social_worker == "Paulo Lima"

    def test_noop_update_still_advances_timestamp(self, updater, stored):
        first = updater.update_narrative(stored.id)
        second = updater.update_narrative(stored.id)

        assert stored.updated_at < first.updated_at < second.updated_at
        assert second.reason == stored.reason

    def test_does_not_consume_eligibility(self, updater, ledger, stored):
        updater.update_narrative(stored.id, reason="Edited")

        assert len(ledger) == 1
        assert ledger.last_delivery("beneficiary-1", BenefitType.COOKING_GAS).id == stored.id

    @pytest.mark.parametrize("field, value", [
        ("beneficiary_id", "someone-else"),
        ("benefit_type", BenefitType.BIRTH_KIT),
        ("benefit_type", "monthly_basket"),
        ("provided_at", date(2025, 5, 1)),
        ("provided_at", "2025-05-01"),
    ])
    def test_immutable_field_with_new_value(self, updater, ledger, stored, field, value):
        with pytest.raises(ImmutableFieldError) as exc_info:
            updater.update_narrative(stored.id, reason="Attempted edit", **{field: value})

        assert exc_info.value.fields == [field]
        unchanged = ledger.find_by_id(stored.id)
        assert unchanged.reason == stored.reason
        assert unchanged.updated_at == stored.updated_at

    def test_immutable_field_with_same_value_is_accepted(self, updater, stored):
        updated = updater.update_narrative(
            stored.id,
            reason="Same anchors",
            beneficiary_id="beneficiary-1",
            benefit_type="cooking_gas",
            provided_at="2025-06-01"
        )

        assert updated.reason == "Same anchors"
        assert updated.provided_at == date(2025, 6, 1)

    def test_unparseable_immutable_value_is_rejected(self, updater, stored):
        with pytest.raises(ImmutableFieldError):
            updater.update_narrative(stored.id, provided_at="first of June")

    @pytest.mark.parametrize("field", ["id", "created_at", "updated_at", "deleted_at"])
    def test_system_fields_are_rejected(self, updater, stored, field):
        with pytest.raises(ImmutableFieldError) as exc_info:
            updater.update_narrative(stored.id, **{field: getattr(stored, field)})

        assert field in exc_info.value.fields

    def test_reports_every_rejected_field(self, updater, stored):
        with pytest.raises(ImmutableFieldError) as exc_info:
            updater.update_narrative(stored.id, beneficiary_id="x", provided_at=date(2024, 1, 1))

        assert exc_info.value.fields == ["beneficiary_id", "provided_at"]

    def test_unknown_field_is_validation_error(self, updater, stored):
        with pytest.raises(ValidationError):
            updater.update_narrative(stored.id, notes="free text")

    def test_blank_reason_is_validation_error(self, updater, stored):
        with pytest.raises(ValidationError):
            updater.update_narrative(stored.id, reason="   ")

    def test_request_body_as_mapping(self, updater, stored):
        updated = updater.update_narrative(stored.id, {"reason": "From the body", "socialWorker": "Paulo Lima"})

        assert updated.reason == "From the body"
        assert updated.social_worker == "Paulo Lima"

    @pytest.mark.parametrize("key", ["report_id", "self", "changes"])
    def test_body_keys_matching_parameter_names_are_unknown_fields(self, updater, stored, key):
        with pytest.raises(ValidationError):
            updater.update_narrative(stored.id, {key: "other"})

    @pytest.mark.parametrize("key, field, value", [
        ("providedAt", "provided_at", "2025-05-01"),
        ("benefitType", "benefit_type", "birth_kit"),
        ("beneficiaryId", "beneficiary_id", "someone-else"),
        ("lastUpdatedAt", "updated_at", "2025-06-01T00:00:00+00:00"),
    ])
    def test_response_keys_hit_immutable_guard(self, updater, stored, key, field, value):
        with pytest.raises(ImmutableFieldError) as exc_info:
            updater.update_narrative(stored.id, {key: value})

        assert exc_info.value.fields == [field]

    def test_missing_report(self, updater):
        with pytest.raises(NotFoundError) as exc_info:
            updater.update_narrative("64b7f0c2a1b2c3d4e5f60718", reason="x")

        assert exc_info.value.resource_id == "64b7f0c2a1b2c3d4e5f60718"

    def test_missing_report_wins_over_immutable_field(self, updater):
        with pytest.raises(NotFoundError):
            updater.update_narrative("missing", provided_at=date(2020, 1, 1))

    def test_deleted_report_can_still_be_annotated(self, updater, ledger, stored):
        ledger.soft_delete(stored.id)

        updated = updater.update_narrative(stored.id, reason="Removed after duplicate entry")

        assert updated.is_deleted()
        assert updated.reason == "Removed after duplicate entry"

    def test_audit_records_before_and_after(self, ledger, stored):
        audit_service = Mock()
        updater = ReportUpdater(ledger, audit_service=audit_service)

        updater.update_narrative(stored.id, social_worker="Paulo Lima")

        kwargs = audit_service.log_action.call_args.kwargs
        assert kwargs["action"] == ReportAction.UPDATE_NARRATIVE.value
        assert kwargs["before"]["social_worker"] == stored.social_worker
        assert kwargs["after"]["social_worker"] == "Paulo Lima"


class TestSoftDelete:
    """Test removal through the updater."""

    def test_soft_delete(self, updater, ledger, stored):
        deleted = updater.soft_delete(stored.id, deleted_by="supervisor")

        assert deleted.is_deleted()
        assert deleted.deleted_by == "supervisor"
        assert ledger.find_by_id(stored.id) is not None
        assert updater.history("beneficiary-1") == []
        assert [r.id for r in updater.history("beneficiary-1", include_deleted=True)] == [stored.id]

    def test_soft_delete_missing(self, updater):
        with pytest.raises(NotFoundError):
            updater.soft_delete("missing")

    def test_soft_delete_is_audited(self, ledger, stored):
        audit_service = Mock()
        updater = ReportUpdater(ledger, audit_service=audit_service)

        updater.soft_delete(stored.id, deleted_by="supervisor")

        kwargs = audit_service.log_action.call_args.kwargs
        assert kwargs["action"] == ReportAction.SOFT_DELETE.value
        assert kwargs["actor"] == "supervisor"
        assert kwargs["before"]["deleted_at"] is None
        assert kwargs["after"]["deleted_at"] is not None

    def test_find_by_id(self, updater, stored):
        assert updater.find_by_id(stored.id).id == stored.id
        with pytest.raises(NotFoundError):
            updater.find_by_id("missing")


class TestAuditFailures:
    """A committed write is returned even when its audit entry is lost."""

    @pytest.fixture
    def failing_audit(self):
        audit_service = Mock()
        audit_service.log_action.side_effect = RuntimeError("audit storage down")
        return audit_service

    def test_update_survives_audit_failure(self, ledger, stored, failing_audit):
        updater = ReportUpdater(ledger, audit_service=failing_audit)

        updated = updater.update_narrative(stored.id, reason="Edited")

        assert updated.reason == "Edited"
        assert ledger.find_by_id(stored.id).reason == "Edited"

    def test_soft_delete_survives_audit_failure(self, ledger, stored, failing_audit):
        updater = ReportUpdater(ledger, audit_service=failing_audit)

        deleted = updater.soft_delete(stored.id, deleted_by="supervisor")

        assert deleted.is_deleted()
        failing_audit.log_action.assert_called_once()


class TestConcurrentUpdates:
    """Concurrent edits of one report."""

    def test_every_edit_moves_timestamp_forward(self, updater, ledger, stored):
        workers = 32

        def edit(n):
            return updater.update_narrative(stored.id, reason=f"Edit {n}")

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(edit, range(workers)))

        timestamps = sorted(result.updated_at for result in results)
        assert len(set(timestamps)) == workers
        assert timestamps[0] > stored.updated_at
        # Frozen clock, so each accepted edit bumps by one microsecond
        assert ledger.find_by_id(stored.id).updated_at == timestamps[-1]
        assert timestamps[-1] == stored.updated_at + timedelta(microseconds=workers)
