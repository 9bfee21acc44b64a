from __future__ import annotations

import logging
from typing import Optional

from flask import Blueprint, jsonify, request

from boxoffice.blueprints.guards import (
    client_ip,
    current_access,
    current_user,
    error,
    json_body,
    login_required,
    respond,
)
from boxoffice.database import get_db
from boxoffice.services.compliance_service import ComplianceService
from boxoffice.services.promoter_service import PromoterService

compliance_bp = Blueprint("compliance", __name__, url_prefix="/compliance")
logger = logging.getLogger(__name__)


def _promoter_from_slug(slug: Optional[str]):
    """Requests may name a promoter; platform-wide requests leave it out."""
    if not slug:
        return None, None
    promoter = PromoterService(get_db()).get_by_slug(slug)
    if promoter is None:
        return None, error("Promoter not found", 404)
    return promoter.promoterID, None


def _scoped_dsr(service: ComplianceService, dsr_id: int):
    dsr = service.get_dsr(dsr_id)
    if dsr is None or not current_access().can_access(dsr.promoterID):
        return None
    return dsr


def _user_id() -> int:
    return current_user().userID


# ---------------------------------------------------------------------------
# Public intake
# ---------------------------------------------------------------------------

@compliance_bp.route("/requests", methods=["POST"])
def create_request():
    data = json_body()
    promoter_id, failure = _promoter_from_slug(data.get("promoterSlug"))
    if failure:
        return failure
    ok, message, dsr = ComplianceService(get_db()).create_dsr(promoter_id, data, ip_address=client_ip())
    if not ok:
        return error(message)
    return jsonify({"success": True, "message": message, "requestId": dsr.dsrID, "deadline": dsr.to_dict()["deadline"]}), 201


@compliance_bp.route("/consents", methods=["POST"])
def record_consent():
    data = json_body()
    promoter_id, failure = _promoter_from_slug(data.get("promoterSlug"))
    if failure:
        return failure
    email = (data.get("email") or "").strip()
    consent_type = (data.get("type") or "").strip()
    if not email or not consent_type:
        return error("email and type are required")
    record = ComplianceService(get_db()).record_consent(
        promoter_id, email, consent_type, bool(data.get("granted", True)), data.get("source") or "web", client_ip()
    )
    return jsonify({"consent": record.to_dict()}), 201


@compliance_bp.route("/consents/withdraw", methods=["POST"])
def withdraw_consent():
    data = json_body()
    promoter_id, failure = _promoter_from_slug(data.get("promoterSlug"))
    if failure:
        return failure
    email = (data.get("email") or "").strip()
    if not email:
        return error("email is required")
    withdrawn = ComplianceService(get_db()).withdraw_consent(promoter_id, email, list(data.get("types") or []), client_ip())
    return jsonify({"withdrawn": [record.to_dict() for record in withdrawn]})


# ---------------------------------------------------------------------------
# Back-office
# ---------------------------------------------------------------------------

@compliance_bp.route("/requests", methods=["GET"])
@login_required
def list_requests():
    access = current_access()
    filters = {key: request.args.get(key) for key in ("status", "type", "email")}
    try:
        requests_ = ComplianceService(get_db()).list_dsrs(None if access.show_all else access.promoter_id, filters)
    except ValueError as exc:
        return error(str(exc))
    return jsonify({"requests": [dsr.to_dict() for dsr in requests_]})


@compliance_bp.route("/requests/overdue", methods=["GET"])
@login_required
def overdue_requests():
    access = current_access()
    overdue = ComplianceService(get_db()).get_overdue_dsrs(None if access.show_all else access.promoter_id)
    return jsonify({"requests": [dsr.to_dict() for dsr in overdue]})


@compliance_bp.route("/requests/<int:dsr_id>", methods=["GET"])
@login_required
def get_request(dsr_id: int):
    service = ComplianceService(get_db())
    dsr = _scoped_dsr(service, dsr_id)
    if dsr is None:
        return error("Request not found", 404)
    trail = service.get_audit_trail("data_subject_request", dsr_id)
    return jsonify(
        {
            "request": dsr.to_dict(),
            "auditTrail": [
                {"action": entry.action, "data": entry.new_values, "timestamp": entry.timestamp.isoformat()}
                for entry in trail
            ],
        }
    )


@compliance_bp.route("/requests/<int:dsr_id>/verify", methods=["POST"])
@login_required
def verify_request(dsr_id: int):
    service = ComplianceService(get_db())
    if _scoped_dsr(service, dsr_id) is None:
        return error("Request not found", 404)
    data = json_body()
    ok, message, dsr = service.verify_dsr(dsr_id, data.get("method") or "email", bool(data.get("verified", True)), _user_id())
    return respond(ok, message, dsr, "request")


@compliance_bp.route("/requests/<int:dsr_id>/status", methods=["PUT"])
@login_required
def update_request_status(dsr_id: int):
    service = ComplianceService(get_db())
    if _scoped_dsr(service, dsr_id) is None:
        return error("Request not found", 404)
    ok, message, dsr = service.update_status(dsr_id, json_body().get("status"), _user_id())
    return respond(ok, message, dsr, "request")


@compliance_bp.route("/requests/<int:dsr_id>/reject", methods=["POST"])
@login_required
def reject_request(dsr_id: int):
    service = ComplianceService(get_db())
    if _scoped_dsr(service, dsr_id) is None:
        return error("Request not found", 404)
    reason = (json_body().get("reason") or "").strip()
    if not reason:
        return error("A rejection reason is required")
    ok, message, dsr = service.reject(dsr_id, reason, _user_id())
    return respond(ok, message, dsr, "request")


@compliance_bp.route("/requests/<int:dsr_id>/complete", methods=["POST"])
@login_required
def complete_request(dsr_id: int):
    service = ComplianceService(get_db())
    if _scoped_dsr(service, dsr_id) is None:
        return error("Request not found", 404)
    ok, message, dsr = service.complete_dsr(dsr_id, json_body().get("response") or {}, _user_id())
    return respond(ok, message, dsr, "request")


@compliance_bp.route("/requests/<int:dsr_id>/process", methods=["POST"])
@login_required
def process_request(dsr_id: int):
    service = ComplianceService(get_db())
    if _scoped_dsr(service, dsr_id) is None:
        return error("Request not found", 404)
    ok, message, dsr = service.process_dsr(dsr_id, _user_id())
    return respond(ok, message, dsr, "request")


@compliance_bp.route("/consents", methods=["GET"])
@login_required
def list_consents():
    email = (request.args.get("email") or "").strip()
    if not email:
        return error("email is required")
    access = current_access()
    consents = ComplianceService(get_db()).list_consents(None if access.show_all else access.promoter_id, email)
    return jsonify({"consents": [consent.to_dict() for consent in consents]})
