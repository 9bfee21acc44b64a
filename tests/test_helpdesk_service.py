from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

import pytest

from boxoffice.models import SupportTicketStatus
from boxoffice.services.helpdesk_service import HelpDeskService, render_canned, to_base36
from conftest import create_promoter

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

AGENT = {"id": 7, "name": "Sam Agent"}


def _with_policies(db_session, promoter_id):
    service = HelpDeskService(db_session)
    service.create_sla_policy(
        promoter_id,
        {
            "name": "Standard",
            "isDefault": True,
            "targets": {"firstResponse": {"normal": 60, "urgent": 15}, "resolution": {"normal": 1440, "urgent": 240}},
        },
    )
    service.create_sla_policy(
        promoter_id,
        {
            "name": "VIP",
            "conditions": [{"field": "category", "value": "vip"}],
            "targets": {"firstResponse": {"normal": 30}},
        },
    )
    return service


def _ticket(service, promoter_id, **data):
    payload = {
        "subject": "Where are my tickets?",
        "description": "I paid but never got an e-mail.",
        "customer": {"email": "Fan@Example.com", "name": "Fan"},
    }
    payload.update(data)
    ok, message, ticket = service.create_ticket(promoter_id, payload, now=NOW)
    assert ok, message
    return ticket


@pytest.mark.parametrize("value, expected", [(0, "0"), (35, "Z"), (36, "10"), (1295, "ZZ")])
def test_to_base36(value, expected):
    assert to_base36(value) == expected


def test_render_canned_keeps_unknown_variables():
    content = "Hi {{ name }}, order {{order}} ships soon. {{missing}}"
    assert render_canned(content, {"name": "Pat", "order": 5}) == "Hi Pat, order 5 ships soon. {{missing}}"


def test_policy_selection(db_session, sample_promoter):
    service = _with_policies(db_session, sample_promoter.promoterID)
    assert service.get_applicable_policy(sample_promoter.promoterID, "normal", "vip").name == "VIP"
    assert service.get_applicable_policy(sample_promoter.promoterID, "normal", "billing").name == "Standard"

    bare = create_promoter(db_session, slug="bare")
    service.create_sla_policy(bare.promoterID, {"name": "Unconditional"})
    assert service.get_applicable_policy(bare.promoterID, "normal", "general") is None


def test_only_one_default_policy(db_session, sample_promoter):
    service = _with_policies(db_session, sample_promoter.promoterID)
    service.create_sla_policy(sample_promoter.promoterID, {"name": "New default", "isDefault": True})
    defaults = [policy.name for policy in service.list_sla_policies(sample_promoter.promoterID) if policy.is_default]
    assert defaults == ["New default"]


def test_create_ticket_sets_number_sla_and_first_message(db_session, sample_promoter):
    service = _with_policies(db_session, sample_promoter.promoterID)

    ticket = _ticket(service, sample_promoter.promoterID)

    assert re.fullmatch(r"TKT-[0-9A-Z]+-[0-9A-Z]{4}", ticket.number)
    assert ticket.status == SupportTicketStatus.NEW
    assert ticket.customer_email == "fan@example.com"
    assert ticket.sla_policy.name == "Standard"
    assert ticket.first_response_due.replace(tzinfo=timezone.utc) == NOW + timedelta(minutes=60)
    assert ticket.resolution_due.replace(tzinfo=timezone.utc) == NOW + timedelta(minutes=1440)
    assert len(ticket.messages) == 1
    assert ticket.messages[0].author_type == "customer"
    assert ticket.messages[0].content == "I paid but never got an e-mail."

    vip = _ticket(service, sample_promoter.promoterID, category="vip")
    assert vip.first_response_due.replace(tzinfo=timezone.utc) == NOW + timedelta(minutes=30)
    assert vip.resolution_due is None


def test_create_ticket_validation(db_session, sample_promoter):
    service = HelpDeskService(db_session)
    assert service.create_ticket(sample_promoter.promoterID, {"subject": ""})[1] == "Subject is required"
    ok, _message, _ticket = service.create_ticket(sample_promoter.promoterID, {"subject": "x", "priority": "whenever"})
    assert not ok


def test_first_public_agent_reply_sets_response_time(db_session, sample_promoter):
    service = _with_policies(db_session, sample_promoter.promoterID)
    ticket = _ticket(service, sample_promoter.promoterID)

    service.add_message(ticket.supportTicketID, {"content": "Internal note", "authorType": "agent", "isPublic": False}, now=NOW + timedelta(minutes=5))
    assert ticket.first_response_at is None

    ok, _message, reply = service.add_message(
        ticket.supportTicketID,
        {"content": "<p>Resent!</p><script>x()</script>", "authorType": "agent", "authorId": 7, "authorName": "Sam"},
        now=NOW + timedelta(minutes=90),
    )
    assert ok
    assert "<script>" not in reply.content
    assert reply.author_id == "7"
    db_session.refresh(ticket)
    assert ticket.first_response_at.replace(tzinfo=timezone.utc) == NOW + timedelta(minutes=90)
    assert ticket.first_response_breached is True

    assert service.add_message(ticket.supportTicketID, {"content": "   "})[1] == "Message content is required"
    assert service.add_message(9999, {"content": "hi"})[1] == "Ticket not found"


def test_status_changes_and_customer_reopen(db_session, sample_promoter):
    service = _with_policies(db_session, sample_promoter.promoterID)
    ticket = _ticket(service, sample_promoter.promoterID)

    ok, _message, ticket = service.assign(ticket.supportTicketID, AGENT)
    assert ok
    assert ticket.status == SupportTicketStatus.OPEN
    assert ticket.assignee_name == "Sam Agent"

    service.update_status(ticket.supportTicketID, "resolved", AGENT, now=NOW + timedelta(hours=2))
    assert ticket.status == SupportTicketStatus.RESOLVED
    assert ticket.resolution_breached is False
    assert any(m.content == "Status changed from open to resolved" for m in ticket.messages)

    service.add_message(ticket.supportTicketID, {"content": "Still nothing", "authorType": "customer"})
    assert ticket.status == SupportTicketStatus.OPEN
    assert ticket.resolved_at is None

    assert service.update_status(ticket.supportTicketID, "lost")[1] == "Unknown ticket status: lost"
    assert service.unassign(ticket.supportTicketID)[2].assignee_id is None


def test_merge_copies_messages_and_closes_secondaries(db_session, sample_promoter):
    service = _with_policies(db_session, sample_promoter.promoterID)
    primary = _ticket(service, sample_promoter.promoterID)
    duplicate = _ticket(service, sample_promoter.promoterID, description="Same problem again")
    other = create_promoter(db_session, slug="elsewhere")
    foreign = _ticket(service, other.promoterID)

    ok, message, merged = service.merge(primary.supportTicketID, [duplicate.supportTicketID, primary.supportTicketID, foreign.supportTicketID, 9999], AGENT)

    assert ok
    assert message == "Merged 1 tickets"
    assert f"[Merged from {duplicate.number}] Same problem again" in [m.content for m in merged.messages]
    db_session.refresh(duplicate)
    assert duplicate.status == SupportTicketStatus.CLOSED
    assert duplicate.closed_at is not None
    db_session.refresh(foreign)
    assert foreign.status == SupportTicketStatus.NEW
    assert service.merge(9999, [primary.supportTicketID])[1] == "Primary ticket not found"


@pytest.mark.parametrize("rating, ok", [(1, True), ("5", True), (0, False), (6, False), ("great", False)])
def test_satisfaction_rating_range(db_session, sample_promoter, rating, ok):
    service = HelpDeskService(db_session)
    ticket = _ticket(service, sample_promoter.promoterID)
    success, message, _ticket_row = service.submit_satisfaction(ticket.supportTicketID, rating, "thanks")
    assert success is ok
    if not ok:
        assert message == "Rating must be between 1 and 5"


def test_canned_responses(db_session, sample_promoter):
    service = HelpDeskService(db_session)
    ok, _message, response = service.create_canned_response(
        sample_promoter.promoterID, {"title": "Resend", "content": "Hi {{name}}, we resent order {{order}}.", "category": "orders"}
    )
    assert ok
    assert service.create_canned_response(sample_promoter.promoterID, {"title": "Empty"})[1] == "Title and content are required"

    rendered = service.render_canned_response(response.cannedResponseID, {"name": "Pat", "order": "ORD-1"})
    assert rendered == "Hi Pat, we resent order ORD-1."
    service.render_canned_response(response.cannedResponseID, {})
    assert response.usage_count == 2
    assert service.render_canned_response(9999, {}) is None
    assert [r.title for r in service.list_canned_responses(sample_promoter.promoterID, "orders")] == ["Resend"]


def test_ticket_metrics(db_session, sample_promoter):
    service = _with_policies(db_session, sample_promoter.promoterID)
    pid = sample_promoter.promoterID
    billing = _ticket(service, pid, category="billing")
    urgent = _ticket(service, pid, priority="urgent", channel="email")

    service.add_message(billing.supportTicketID, {"content": "On it", "authorType": "agent"}, now=NOW + timedelta(minutes=30))
    service.update_status(billing.supportTicketID, "resolved", now=NOW + timedelta(hours=2))
    service.submit_satisfaction(billing.supportTicketID, 4)
    service.add_message(urgent.supportTicketID, {"content": "Looking", "authorType": "agent"}, now=NOW + timedelta(minutes=30))

    metrics = service.get_ticket_metrics(pid)

    assert metrics["total"] == 2
    assert metrics["open"] == 1
    assert metrics["resolved"] == 1
    assert metrics["avgResolutionHours"] == 2
    assert metrics["avgFirstResponseMinutes"] == 30
    assert metrics["slaCompliance"] == 50
    assert metrics["byPriority"] == {"low": 0, "normal": 1, "high": 0, "urgent": 1}
    assert metrics["byCategory"] == {"billing": 1, "general": 1}
    assert metrics["byChannel"] == {"web": 1, "email": 1}
    assert metrics["satisfaction"] == {"average": 4.0, "responses": 1}


def test_metrics_for_promoter_without_tickets(db_session, sample_promoter):
    metrics = HelpDeskService(db_session).get_ticket_metrics(sample_promoter.promoterID)
    assert metrics["total"] == 0
    assert metrics["slaCompliance"] == 100
