from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from flask import Blueprint, abort, jsonify, request

from boxoffice.blueprints.guards import (
    current_access,
    current_user,
    error,
    json_body,
    login_required,
    require_promoter,
    respond,
)
from boxoffice.database import ensure_utc, get_db
from boxoffice.services.helpdesk_service import HelpDeskService
from boxoffice.services.promoter_service import PromoterService

support_bp = Blueprint("support", __name__, url_prefix="/support")
logger = logging.getLogger(__name__)


def _agent() -> dict:
    user = current_user()
    return {"id": user.userID, "name": user.username}


def _ticket_or_404(service: HelpDeskService, ticket_id: int):
    ticket = service.get_ticket(ticket_id)
    if ticket is None or not current_access().can_access(ticket.promoterID):
        abort(404, description="Ticket not found")
    return ticket


def _date_arg(name: str) -> Optional[datetime]:
    value = request.args.get(name)
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        abort(400, description=f"{name} must be an ISO date")


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------

@support_bp.route("/tickets", methods=["POST"])
def create_ticket():
    """Staff open tickets for their promoter; buyers name the promoter by slug."""
    data = json_body()
    user = current_user()
    if user is not None and (user.is_admin or user.is_promoter):
        promoter_id = require_promoter()
    else:
        promoter = PromoterService(get_db()).get_by_slug(data.get("promoterSlug") or "")
        if promoter is None or not promoter.active:
            return error("Promoter not found", 404)
        promoter_id = promoter.promoterID
        customer = data.get("customer") or {}
        if not (customer.get("email") or "").strip():
            return error("Customer e-mail is required")
    ok, message, ticket = HelpDeskService(get_db()).create_ticket(promoter_id, data)
    return respond(ok, message, ticket, "ticket", created=True)


@support_bp.route("/tickets", methods=["GET"])
@login_required
def list_tickets():
    access = current_access()
    filters = {key: request.args.get(key) for key in ("status", "priority", "channel", "category", "assigneeId")}
    try:
        tickets = HelpDeskService(get_db()).list_tickets(None if access.show_all else access.promoter_id, filters)
    except ValueError as exc:
        return error(str(exc))
    return jsonify({"tickets": [ticket.to_dict() for ticket in tickets]})


@support_bp.route("/tickets/<int:ticket_id>", methods=["GET"])
@login_required
def get_ticket(ticket_id: int):
    ticket = _ticket_or_404(HelpDeskService(get_db()), ticket_id)
    return jsonify({"ticket": ticket.to_dict(include_messages=True)})


@support_bp.route("/tickets/<int:ticket_id>/messages", methods=["POST"])
@login_required
def add_message(ticket_id: int):
    service = HelpDeskService(get_db())
    _ticket_or_404(service, ticket_id)
    agent = _agent()
    data = {**json_body(), "authorType": "agent", "authorId": agent["id"], "authorName": agent["name"]}
    ok, message, ticket_message = service.add_message(ticket_id, data)
    return respond(ok, message, ticket_message, "message", created=True)


@support_bp.route("/tickets/<int:ticket_id>/status", methods=["PUT"])
@login_required
def update_status(ticket_id: int):
    service = HelpDeskService(get_db())
    _ticket_or_404(service, ticket_id)
    ok, message, ticket = service.update_status(ticket_id, json_body().get("status"), _agent())
    return respond(ok, message, ticket, "ticket")


@support_bp.route("/tickets/<int:ticket_id>/assign", methods=["POST"])
@login_required
def assign_ticket(ticket_id: int):
    service = HelpDeskService(get_db())
    _ticket_or_404(service, ticket_id)
    data = json_body()
    assignee = {"id": data["assigneeId"], "name": data.get("assigneeName")} if data.get("assigneeId") else _agent()
    ok, message, ticket = service.assign(ticket_id, assignee)
    return respond(ok, message, ticket, "ticket")


@support_bp.route("/tickets/<int:ticket_id>/unassign", methods=["POST"])
@login_required
def unassign_ticket(ticket_id: int):
    service = HelpDeskService(get_db())
    _ticket_or_404(service, ticket_id)
    ok, message, ticket = service.unassign(ticket_id)
    return respond(ok, message, ticket, "ticket")


@support_bp.route("/tickets/<int:ticket_id>/merge", methods=["POST"])
@login_required
def merge_tickets(ticket_id: int):
    service = HelpDeskService(get_db())
    _ticket_or_404(service, ticket_id)
    try:
        secondary_ids = [int(value) for value in json_body().get("ticketIds") or []]
    except (TypeError, ValueError):
        return error("ticketIds must be a list of ticket ids")
    if not secondary_ids:
        return error("ticketIds is required")
    ok, message, ticket = service.merge(ticket_id, secondary_ids, _agent())
    return respond(ok, message, ticket, "ticket")


@support_bp.route("/tickets/<int:ticket_id>/satisfaction", methods=["POST"])
def submit_satisfaction(ticket_id: int):
    data = json_body()
    service = HelpDeskService(get_db())
    ticket = service.get_ticket(ticket_id)
    email = (data.get("email") or "").strip().lower()
    if ticket is None or not email or (ticket.customer_email or "").lower() != email:
        return error("Ticket not found", 404)
    ok, message, ticket = service.submit_satisfaction(ticket_id, data.get("rating"), data.get("comment"))
    return respond(ok, message)


# ---------------------------------------------------------------------------
# SLA policies & canned responses
# ---------------------------------------------------------------------------

@support_bp.route("/sla-policies", methods=["GET"])
@login_required
def list_sla_policies():
    policies = HelpDeskService(get_db()).list_sla_policies(require_promoter())
    return jsonify({"policies": [policy.to_dict() for policy in policies]})


@support_bp.route("/sla-policies", methods=["POST"])
@login_required
def create_sla_policy():
    ok, message, policy = HelpDeskService(get_db()).create_sla_policy(require_promoter(), json_body())
    return respond(ok, message, policy, "policy", created=True)


@support_bp.route("/canned-responses", methods=["GET"])
@login_required
def list_canned_responses():
    responses = HelpDeskService(get_db()).list_canned_responses(require_promoter(), request.args.get("category"))
    return jsonify({"responses": [response.to_dict() for response in responses]})


@support_bp.route("/canned-responses", methods=["POST"])
@login_required
def create_canned_response():
    ok, message, response = HelpDeskService(get_db()).create_canned_response(require_promoter(), json_body())
    return respond(ok, message, response, "response", created=True)


@support_bp.route("/canned-responses/<int:response_id>/render", methods=["POST"])
@login_required
def render_canned_response(response_id: int):
    promoter_id = require_promoter()
    service = HelpDeskService(get_db())
    if response_id not in {response.cannedResponseID for response in service.list_canned_responses(promoter_id)}:
        return error("Canned response not found", 404)
    content = service.render_canned_response(response_id, json_body().get("variables") or {})
    return jsonify({"content": content})


@support_bp.route("/metrics", methods=["GET"])
@login_required
def ticket_metrics():
    metrics = HelpDeskService(get_db()).get_ticket_metrics(require_promoter(), _date_arg("start"), _date_arg("end"))
    return jsonify(metrics)
