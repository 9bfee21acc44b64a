from __future__ import annotations

import logging
import re
import secrets
import string
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import bleach
from sqlalchemy.orm import Session

from boxoffice.database import ensure_utc, utcnow
from boxoffice.models import (
    CannedResponse,
    SLAPolicy,
    SupportChannel,
    SupportTicket,
    SupportTicketPriority,
    SupportTicketStatus,
    TicketMessage,
)
from boxoffice.observability import increment_counter

OPEN_STATUSES = (
    SupportTicketStatus.NEW,
    SupportTicketStatus.OPEN,
    SupportTicketStatus.PENDING,
    SupportTicketStatus.ON_HOLD,
)
MESSAGE_TAGS = ["a", "b", "br", "code", "em", "i", "li", "ol", "p", "pre", "strong", "ul"]
_BASE36 = string.digits + string.ascii_uppercase
_VARIABLE_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_ticket_number(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    stamp = to_base36(int(now.timestamp() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
    return f"TKT-{stamp}-{suffix}"


def _condition_matches(condition: Dict[str, Any], priority: str, category: str) -> bool:
    field = condition.get("field")
    value = condition.get("value")
    actual = {"priority": priority, "category": category}.get(field)
    if actual is None:
        return True
    if isinstance(value, (list, tuple)):
        return actual in value
    return actual == value


def render_canned(content: str, variables: Dict[str, Any]) -> str:
    def _replace(match: re.Match) -> str:
        key = match.group(1)
        return str(variables[key]) if key in variables else match.group(0)

    return _VARIABLE_PATTERN.sub(_replace, content)


class HelpDeskService:
    """Support tickets with SLA tracking, canned responses and reporting."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # SLA policies
    # ------------------------------------------------------------------

    def list_sla_policies(self, promoter_id: int) -> List[SLAPolicy]:
        return (
            self.db.query(SLAPolicy)
            .filter(SLAPolicy.promoterID == promoter_id)
            .order_by(SLAPolicy.slaPolicyID)
            .all()
        )

    def create_sla_policy(self, promoter_id: int, data: Dict[str, Any]) -> Tuple[bool, str, Optional[SLAPolicy]]:
        name = (data.get("name") or "").strip()
        if not name:
            return False, "Policy name is required", None
        targets = data.get("targets") or {}
        policy = SLAPolicy(
            promoterID=promoter_id,
            name=name,
            is_default=bool(data.get("isDefault")),
            conditions=list(data.get("conditions") or []),
            first_response_minutes=dict(targets.get("firstResponse") or {}),
            resolution_minutes=dict(targets.get("resolution") or {}),
        )
        if policy.is_default:
            for other in self.list_sla_policies(promoter_id):
                other.is_default = False
        self.db.add(policy)
        self.db.commit()
        return True, "SLA policy created", policy

    def get_applicable_policy(self, promoter_id: int, priority: str, category: str) -> Optional[SLAPolicy]:
        policies = self.list_sla_policies(promoter_id)
        for policy in policies:
            conditions = policy.conditions or []
            if conditions and all(_condition_matches(c, priority, category) for c in conditions):
                return policy
        return next((policy for policy in policies if policy.is_default), None)

    # ------------------------------------------------------------------
    # Tickets
    # ------------------------------------------------------------------

    def get_ticket(self, ticket_id: int, promoter_id: Optional[int] = None) -> Optional[SupportTicket]:
        ticket = self.db.get(SupportTicket, ticket_id)
        if ticket is None or (promoter_id is not None and ticket.promoterID != promoter_id):
            return None
        return ticket

    def list_tickets(self, promoter_id: Optional[int], filters: Optional[Dict[str, Any]] = None) -> List[SupportTicket]:
        filters = filters or {}
        query = self.db.query(SupportTicket)
        if promoter_id is not None:
            query = query.filter(SupportTicket.promoterID == promoter_id)
        status = filters.get("status")
        if status:
            statuses = status if isinstance(status, (list, tuple)) else str(status).split(",")
            query = query.filter(SupportTicket.status.in_([SupportTicketStatus(s) for s in statuses]))
        if filters.get("priority"):
            query = query.filter(SupportTicket.priority == SupportTicketPriority(filters["priority"]))
        if filters.get("channel"):
            query = query.filter(SupportTicket.channel == SupportChannel(filters["channel"]))
        if filters.get("category"):
            query = query.filter(SupportTicket.category == filters["category"])
        if filters.get("assigneeId"):
            query = query.filter(SupportTicket.assignee_id == int(filters["assigneeId"]))
        return query.order_by(SupportTicket.created_at.desc()).all()

    def create_ticket(self, promoter_id: int, data: Dict[str, Any], now: Optional[datetime] = None) -> Tuple[bool, str, Optional[SupportTicket]]:
        subject = (data.get("subject") or "").strip()
        if not subject:
            return False, "Subject is required", None
        try:
            priority = SupportTicketPriority(data.get("priority") or SupportTicketPriority.NORMAL.value)
            channel = SupportChannel(data.get("channel") or SupportChannel.WEB.value)
        except ValueError as exc:
            return False, str(exc), None

        now = now or utcnow()
        customer = data.get("customer") or {}
        category = data.get("category") or "general"
        description = bleach.clean(data.get("description") or "", tags=MESSAGE_TAGS, strip=True)
        ticket = SupportTicket(
            number=generate_ticket_number(now),
            promoterID=promoter_id,
            subject=subject,
            description=description,
            status=SupportTicketStatus.NEW,
            priority=priority,
            channel=channel,
            category=category,
            customer_email=(customer.get("email") or "").strip().lower() or None,
            customer_name=customer.get("name"),
            orderID=data.get("orderId"),
            created_at=now,
        )

        policy = self.get_applicable_policy(promoter_id, priority.value, category)
        if policy is not None:
            ticket.slaPolicyID = policy.slaPolicyID
            first_response = (policy.first_response_minutes or {}).get(priority.value)
            resolution = (policy.resolution_minutes or {}).get(priority.value)
            if first_response:
                ticket.first_response_due = now + timedelta(minutes=int(first_response))
            if resolution:
                ticket.resolution_due = now + timedelta(minutes=int(resolution))

        if description:
            ticket.messages.append(
                TicketMessage(
                    message_type="reply",
                    author_type="customer",
                    author_name=ticket.customer_name,
                    content=description,
                    is_public=True,
                    created_at=now,
                )
            )
        self.db.add(ticket)
        self.db.commit()
        increment_counter("support_tickets_created_total", labels={"priority": priority.value})
        self.logger.info("Support ticket %s created", ticket.number, extra={"promoter": promoter_id})
        return True, "Ticket created", ticket

    def _system_message(self, ticket: SupportTicket, content: str, actor: Optional[Dict[str, Any]] = None) -> None:
        actor = actor or {}
        ticket.messages.append(
            TicketMessage(
                message_type="system",
                author_type="system",
                author_id=str(actor["id"]) if actor.get("id") is not None else None,
                author_name=actor.get("name"),
                content=content,
                is_public=False,
                created_at=utcnow(),
            )
        )

    def _apply_status(self, ticket: SupportTicket, status: SupportTicketStatus, actor: Optional[Dict[str, Any]], now: datetime) -> None:
        current = SupportTicketStatus(ticket.status)
        if status == current:
            return
        self._system_message(ticket, f"Status changed from {current.value} to {status.value}", actor)
        ticket.status = status
        if status == SupportTicketStatus.RESOLVED and ticket.resolved_at is None:
            ticket.resolved_at = now
            if ticket.resolution_due is not None:
                ticket.resolution_breached = now > ensure_utc(ticket.resolution_due)
        if status == SupportTicketStatus.CLOSED and ticket.closed_at is None:
            ticket.closed_at = now

    def update_status(self, ticket_id: int, status: str, actor: Optional[Dict[str, Any]] = None, now: Optional[datetime] = None) -> Tuple[bool, str, Optional[SupportTicket]]:
        ticket = self.get_ticket(ticket_id)
        if ticket is None:
            return False, "Ticket not found", None
        try:
            new_status = SupportTicketStatus(status)
        except ValueError:
            return False, f"Unknown ticket status: {status}", None
        self._apply_status(ticket, new_status, actor, now or utcnow())
        self.db.commit()
        return True, "Ticket updated", ticket

    def add_message(self, ticket_id: int, data: Dict[str, Any], now: Optional[datetime] = None) -> Tuple[bool, str, Optional[TicketMessage]]:
        ticket = self.get_ticket(ticket_id)
        if ticket is None:
            return False, "Ticket not found", None
        content = bleach.clean(data.get("content") or "", tags=MESSAGE_TAGS, strip=True).strip()
        if not content:
            return False, "Message content is required", None

        now = now or utcnow()
        author_type = data.get("authorType") or "customer"
        is_public = bool(data.get("isPublic", True))
        message = TicketMessage(
            message_type=data.get("type") or ("reply" if is_public else "note"),
            author_type=author_type,
            author_id=str(data["authorId"]) if data.get("authorId") is not None else None,
            author_name=data.get("authorName"),
            content=content,
            is_public=is_public,
            created_at=now,
        )
        ticket.messages.append(message)

        if author_type == "agent" and is_public and ticket.first_response_at is None:
            ticket.first_response_at = now
            if ticket.first_response_due is not None:
                ticket.first_response_breached = now > ensure_utc(ticket.first_response_due)

        if author_type == "customer" and SupportTicketStatus(ticket.status) == SupportTicketStatus.RESOLVED:
            ticket.status = SupportTicketStatus.OPEN
            ticket.resolved_at = None

        self.db.commit()
        return True, "Message added", message

    def assign(self, ticket_id: int, assignee: Dict[str, Any]) -> Tuple[bool, str, Optional[SupportTicket]]:
        ticket = self.get_ticket(ticket_id)
        if ticket is None:
            return False, "Ticket not found", None
        ticket.assignee_id = assignee.get("id")
        ticket.assignee_name = assignee.get("name")
        self._apply_status(ticket, SupportTicketStatus.OPEN, assignee, utcnow())
        self.db.commit()
        return True, "Ticket assigned", ticket

    def unassign(self, ticket_id: int) -> Tuple[bool, str, Optional[SupportTicket]]:
        ticket = self.get_ticket(ticket_id)
        if ticket is None:
            return False, "Ticket not found", None
        ticket.assignee_id = None
        ticket.assignee_name = None
        self.db.commit()
        return True, "Ticket unassigned", ticket

    def merge(self, primary_id: int, secondary_ids: Iterable[int], actor: Optional[Dict[str, Any]] = None) -> Tuple[bool, str, Optional[SupportTicket]]:
        primary = self.get_ticket(primary_id)
        if primary is None:
            return False, "Primary ticket not found", None

        now = utcnow()
        merged = 0
        for secondary_id in secondary_ids:
            if secondary_id == primary_id:
                continue
            secondary = self.get_ticket(secondary_id, primary.promoterID)
            if secondary is None:
                continue
            for message in list(secondary.messages):
                primary.messages.append(
                    TicketMessage(
                        message_type=message.message_type,
                        author_type=message.author_type,
                        author_id=message.author_id,
                        author_name=message.author_name,
                        content=f"[Merged from {secondary.number}] {message.content}",
                        is_public=message.is_public,
                        created_at=message.created_at,
                    )
                )
            self._apply_status(secondary, SupportTicketStatus.CLOSED, actor, now)
            self._system_message(secondary, f"Merged into ticket {primary.number}", actor)
            merged += 1

        self.db.commit()
        self.logger.info("Merged %s tickets into %s", merged, primary.number)
        return True, f"Merged {merged} tickets", primary

    def submit_satisfaction(self, ticket_id: int, rating: Any, comment: Optional[str] = None) -> Tuple[bool, str, Optional[SupportTicket]]:
        ticket = self.get_ticket(ticket_id)
        if ticket is None:
            return False, "Ticket not found", None
        try:
            rating = int(rating)
        except (TypeError, ValueError):
            return False, "Rating must be between 1 and 5", None
        if not 1 <= rating <= 5:
            return False, "Rating must be between 1 and 5", None
        ticket.satisfaction_rating = rating
        ticket.satisfaction_comment = comment
        ticket.satisfaction_at = utcnow()
        self.db.commit()
        return True, "Thank you for your feedback", ticket

    # ------------------------------------------------------------------
    # Canned responses
    # ------------------------------------------------------------------

    def list_canned_responses(self, promoter_id: int, category: Optional[str] = None) -> List[CannedResponse]:
        query = self.db.query(CannedResponse).filter(CannedResponse.promoterID == promoter_id)
        if category:
            query = query.filter(CannedResponse.category == category)
        return query.order_by(CannedResponse.usage_count.desc(), CannedResponse.title).all()

    def create_canned_response(self, promoter_id: int, data: Dict[str, Any]) -> Tuple[bool, str, Optional[CannedResponse]]:
        title = (data.get("title") or "").strip()
        content = (data.get("content") or "").strip()
        if not title or not content:
            return False, "Title and content are required", None
        response = CannedResponse(promoterID=promoter_id, title=title, category=data.get("category"), content=content)
        self.db.add(response)
        self.db.commit()
        return True, "Canned response created", response

    def render_canned_response(self, response_id: int, variables: Dict[str, Any]) -> Optional[str]:
        response = self.db.get(CannedResponse, response_id)
        if response is None:
            return None
        response.usage_count = (response.usage_count or 0) + 1
        self.db.commit()
        return render_canned(response.content, variables or {})

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_ticket_metrics(self, promoter_id: int, start: Optional[datetime] = None, end: Optional[datetime] = None) -> Dict[str, Any]:
        query = self.db.query(SupportTicket).filter(SupportTicket.promoterID == promoter_id)
        if start is not None:
            query = query.filter(SupportTicket.created_at >= start)
        if end is not None:
            query = query.filter(SupportTicket.created_at <= end)
        tickets = query.all()

        by_priority = {priority.value: 0 for priority in SupportTicketPriority}
        by_category: Counter = Counter()
        by_channel: Counter = Counter()
        open_count = 0
        resolution_hours: List[float] = []
        response_minutes: List[float] = []
        sla_met = 0
        ratings: List[int] = []

        for ticket in tickets:
            if SupportTicketStatus(ticket.status) in OPEN_STATUSES:
                open_count += 1
            by_priority[ticket.priority.value] += 1
            by_category[ticket.category or "general"] += 1
            by_channel[ticket.channel.value] += 1
            created = ensure_utc(ticket.created_at)
            if ticket.resolved_at is not None:
                resolution_hours.append((ensure_utc(ticket.resolved_at) - created).total_seconds() / 3600)
            if ticket.first_response_at is not None:
                response_minutes.append((ensure_utc(ticket.first_response_at) - created).total_seconds() / 60)
            if not ticket.first_response_breached and not ticket.resolution_breached:
                sla_met += 1
            if ticket.satisfaction_rating:
                ratings.append(ticket.satisfaction_rating)

        return {
            "total": len(tickets),
            "open": open_count,
            "resolved": len(tickets) - open_count,
            "avgResolutionHours": round(sum(resolution_hours) / len(resolution_hours)) if resolution_hours else 0,
            "avgFirstResponseMinutes": round(sum(response_minutes) / len(response_minutes)) if response_minutes else 0,
            "slaCompliance": round(sla_met / len(tickets) * 100) if tickets else 100,
            "byPriority": by_priority,
            "byCategory": dict(by_category),
            "byChannel": dict(by_channel),
            "satisfaction": {
                "average": round(sum(ratings) / len(ratings), 1) if ratings else 0,
                "responses": len(ratings),
            },
        }
