from __future__ import annotations

import logging
import uuid
from typing import Iterable, Optional, Tuple

import requests

from boxoffice.config import Config
from boxoffice.observability import increment_counter

logger = logging.getLogger(__name__)


class Mailer:
    """Transactional e-mail over an HTTP API. Without a key, sends are logged only."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        sender: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> None:
        self.api_key = Config.EMAIL_API_KEY if api_key is None else api_key
        self.api_url = api_url or Config.EMAIL_API_URL
        self.sender = sender or Config.EMAIL_FROM
        self.timeout = timeout or Config.EXTERNAL_API_TIMEOUT

    @property
    def dry_run(self) -> bool:
        return not self.api_key

    def send(
        self,
        to: str,
        subject: str,
        html: str,
        tags: Optional[Iterable[str]] = None,
        sender: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[str]]:
        """Returns (success, message, provider message id)."""
        if not to:
            return False, "Recipient is required", None

        if self.dry_run:
            message_id = f"dry-run-{uuid.uuid4().hex[:12]}"
            logger.info("E-mail dry run", extra={"to": to, "subject": subject, "message_id": message_id})
            increment_counter("emails_sent_total", labels={"mode": "dry_run"})
            return True, "Dry run", message_id

        payload = {
            "from": sender or self.sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if tags:
            payload["tags"] = [{"name": "category", "value": tag} for tag in tags]

        try:
            response = requests.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("E-mail delivery failed", extra={"to": to, "error": str(exc)})
            increment_counter("emails_failed_total")
            return False, f"E-mail delivery failed: {exc}", None

        message_id = (response.json() or {}).get("id")
        increment_counter("emails_sent_total", labels={"mode": "live"})
        return True, "Sent", message_id


def render_order_confirmation(order) -> Tuple[str, str]:
    """Subject and HTML body for an order confirmation e-mail."""
    event_name = order.event.name if order.event else "your event"
    rows = "".join(
        f"<li>{ticket.ticket_code}</li>" for ticket in order.tickets
    )
    link = f"{Config.PUBLIC_BASE_URL}/api/orders/{order.order_number}/confirmation"
    subject = f"Your tickets for {event_name} ({order.order_number})"
    html = (
        f"<h1>Thanks for your order!</h1>"
        f"<p>Order <strong>{order.order_number}</strong> is confirmed.</p>"
        f"<p>Total charged: ${float(order.total or 0):.2f}</p>"
        f"<ul>{rows}</ul>"
        f"<p><a href=\"{link}\">View your tickets</a></p>"
    )
    return subject, html
