# SPDX-License-Identifier: Apache-2.0

"""
Benefit report endpoints.

Thin HTTP surface over the eligibility engine, the registrar and the
updater. Ledger errors propagate to the error handler middleware, which
renders them as problem documents.
"""

from datetime import date

from flask import request, jsonify, current_app
from flask_openapi3 import APIBlueprint, Tag
from pydantic import BaseModel, Field
from opentelemetry import trace
import logging

from models.enums import BenefitType
from models.requests import (
    RegisterReportRequest, EligibilityQuery, ReportListQuery, SoftDeleteRequest
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

benefits_tag = Tag(name="Benefits", description="Benefit eligibility and delivery history")
reports_bp = APIBlueprint(
    'benefits',
    __name__,
    url_prefix='/api/benefits',
    abp_tags=[benefits_tag]
)


class BeneficiaryPath(BaseModel):
    beneficiary_id: str = Field(..., description="Beneficiary identifier")


class EligibilityPath(BaseModel):
    beneficiary_id: str = Field(..., description="Beneficiary identifier")
    benefit_type: BenefitType = Field(..., description="Benefit type")


class ReportPath(BaseModel):
    report_id: str = Field(..., description="Report identifier")


def _json_object() -> dict:
    """Request JSON body, or an empty object when absent or not an object."""
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


@reports_bp.get('/beneficiaries/<beneficiary_id>/eligibility/<benefit_type>')
def get_eligibility(path: EligibilityPath, query: EligibilityQuery):
    """
    Evaluate eligibility for a benefit type.

    Defaults to today when no ``as_of`` date is given.
    """
    as_of = query.as_of or date.today()
    decision = current_app.eligibility_engine.evaluate(path.beneficiary_id, path.benefit_type, as_of)

    return jsonify({
        "beneficiaryId": path.beneficiary_id,
        "benefitType": path.benefit_type.value,
        "asOf": as_of.isoformat(),
        **decision.to_dict()
    }), 200


@reports_bp.get('/beneficiaries/<beneficiary_id>/reports')
def list_beneficiary_reports(path: BeneficiaryPath, query: ReportListQuery):
    """List the delivery history of a beneficiary, newest first."""
    reports = current_app.report_updater.history(
        path.beneficiary_id,
        benefit_type=query.benefit_type,
        include_deleted=query.include_deleted
    )
    return jsonify({
        "beneficiaryId": path.beneficiary_id,
        "total": len(reports),
        "items": [report.to_response() for report in reports]
    }), 200


@reports_bp.post('/reports')
def register_report(body: RegisterReportRequest):
    """Register a benefit delivery after checking eligibility."""
    report = current_app.report_registrar.register(
        beneficiary_id=body.beneficiary_id,
        benefit_type=body.benefit_type,
        reason=body.reason,
        social_worker=body.social_worker,
        provided_at=body.provided_at
    )
    return jsonify(report.to_response()), 201


@reports_bp.get('/reports/<report_id>')
def get_report(path: ReportPath):
    """Get a single report."""
    report = current_app.report_updater.find_by_id(path.report_id)
    return jsonify(report.to_response()), 200


@reports_bp.patch('/reports/<report_id>')
def update_report(path: ReportPath):
    """
    Update the narrative fields of a report.

    Identity fields (beneficiary, benefit type, delivery date) are rejected
    with 422, under their field or response names.
    """
    report = current_app.report_updater.update_narrative(path.report_id, _json_object())
    return jsonify(report.to_response()), 200


@reports_bp.get('/reports/<report_id>/audit')
def get_report_audit(path: ReportPath):
    """Audit trail of a report, newest first. Empty when audit storage is not configured."""
    current_app.report_updater.find_by_id(path.report_id)
    entries = current_app.audit_service.history("report", path.report_id)
    return jsonify({"reportId": path.report_id, "items": entries}), 200


@reports_bp.delete('/reports/<report_id>')
def delete_report(path: ReportPath):
    """Soft delete a report. The record stays in the ledger."""
    body = SoftDeleteRequest.model_validate(_json_object())
    report = current_app.report_updater.soft_delete(path.report_id, deleted_by=body.deleted_by)
    return jsonify(report.to_response()), 200


@reports_bp.get('/health')
def health():
    """Ledger backend health."""
    status = current_app.benefit_ledger.health_check()
    code = 200 if status.get("status") == "healthy" else 503
    return jsonify(status), code
