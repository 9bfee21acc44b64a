from __future__ import annotations

import html as html_lib
import logging
import re
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

import bleach
from sqlalchemy.orm import Session

from boxoffice.config import Config
from boxoffice.database import ensure_utc, utcnow
from boxoffice.models import (
    CampaignStatus,
    EmailCampaign,
    EmailEngagement,
    EmailSend,
    EmailSubscriber,
    SendStatus,
    SubscriberStatus,
)
from boxoffice.observability import increment_counter, record_event
from boxoffice.services.mailer import Mailer

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_HREF_PATTERN = re.compile(r'href="(https?://[^"]+)"')

ALLOWED_TAGS = [
    "a", "b", "blockquote", "br", "div", "em", "h1", "h2", "h3", "h4", "hr", "i",
    "img", "li", "ol", "p", "span", "strong", "table", "tbody", "td", "th", "thead",
    "tr", "u", "ul",
]
ALLOWED_ATTRIBUTES = {
    "*": ["style", "align"],
    "a": ["href", "title", "target"],
    "img": ["src", "alt", "width", "height"],
    "td": ["colspan", "rowspan"],
}
SENDABLE_STATUSES = {CampaignStatus.DRAFT, CampaignStatus.SCHEDULED, CampaignStatus.PAUSED}
EDITABLE_STATUSES = SENDABLE_STATUSES


def sanitize_html(content: Optional[str]) -> str:
    return bleach.clean(content or "", tags=ALLOWED_TAGS, attributes=ALLOWED_ATTRIBUTES, strip=True)


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


class CampaignService:
    """Marketing e-mail: subscribers, campaigns, delivery and engagement tracking."""

    def __init__(self, db_session: Session, mailer: Optional[Mailer] = None) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.mailer = mailer or Mailer()

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def add_subscriber(self, promoter_id: int, data: Dict[str, Any]) -> Tuple[bool, str, Optional[EmailSubscriber]]:
        email = (data.get("email") or "").strip().lower()
        if not EMAIL_PATTERN.match(email):
            return False, "A valid e-mail address is required", None

        subscriber = self.db.query(EmailSubscriber).filter_by(promoterID=promoter_id, email=email).first()
        created = subscriber is None
        if created:
            subscriber = EmailSubscriber(
                promoterID=promoter_id,
                email=email,
                status=SubscriberStatus.SUBSCRIBED,
                segments=[],
                tags=[],
                source=data.get("source") or "manual",
                subscribed_at=utcnow(),
            )
            self.db.add(subscriber)
        subscriber.first_name = data.get("firstName") or subscriber.first_name
        subscriber.last_name = data.get("lastName") or subscriber.last_name
        subscriber.tags = sorted(set(subscriber.tags or []) | set(data.get("tags") or []))
        subscriber.segments = sorted(set(subscriber.segments or []) | set(data.get("segments") or []))
        if data.get("status"):
            subscriber.status = SubscriberStatus(data["status"])
        self.db.commit()
        return True, "Subscriber added" if created else "Subscriber updated", subscriber

    def import_subscribers(self, promoter_id: int, rows: Iterable[Dict[str, Any]]) -> Dict[str, int]:
        imported = duplicates = invalid = 0
        for row in rows:
            email = (row.get("email") or "").strip().lower()
            if not EMAIL_PATTERN.match(email):
                invalid += 1
                continue
            if self.db.query(EmailSubscriber.subscriberID).filter_by(promoterID=promoter_id, email=email).first():
                duplicates += 1
                continue
            self.add_subscriber(promoter_id, {**row, "source": "import"})
            imported += 1
        self.logger.info(
            "Subscribers imported",
            extra={"promoter": promoter_id, "imported": imported, "duplicates": duplicates, "invalid": invalid},
        )
        return {"imported": imported, "duplicates": duplicates, "invalid": invalid, "skipped": duplicates + invalid}

    def list_subscribers(self, promoter_id: int, status: Optional[str] = None) -> List[EmailSubscriber]:
        query = self.db.query(EmailSubscriber).filter(EmailSubscriber.promoterID == promoter_id)
        if status:
            query = query.filter(EmailSubscriber.status == SubscriberStatus(status))
        return query.order_by(EmailSubscriber.email).all()

    def unsubscribe(self, promoter_id: int, email: str) -> Tuple[bool, str, Optional[EmailSubscriber]]:
        subscriber = (
            self.db.query(EmailSubscriber)
            .filter_by(promoterID=promoter_id, email=(email or "").strip().lower())
            .first()
        )
        if subscriber is None:
            return False, "Subscriber not found", None
        if subscriber.status != SubscriberStatus.UNSUBSCRIBED:
            subscriber.status = SubscriberStatus.UNSUBSCRIBED
            subscriber.unsubscribed_at = utcnow()
            self.db.commit()
        return True, "Unsubscribed", subscriber

    def unsubscribe_from_send(self, send_id: int) -> Tuple[bool, str, Optional[EmailSubscriber]]:
        send = self.db.get(EmailSend, send_id)
        if send is None:
            return False, "Unknown e-mail", None
        campaign = send.campaign
        already = (
            self.db.query(EmailSubscriber)
            .filter_by(promoterID=campaign.promoterID, email=send.email, status=SubscriberStatus.UNSUBSCRIBED)
            .first()
        )
        ok, message, subscriber = self.unsubscribe(campaign.promoterID, send.email)
        if ok and already is None:
            campaign.unsubscribed_count = (campaign.unsubscribed_count or 0) + 1
            self.db.commit()
        return ok, message, subscriber

    # ------------------------------------------------------------------
    # Campaigns
    # ------------------------------------------------------------------

    def list_campaigns(self, promoter_id: Optional[int]) -> List[EmailCampaign]:
        query = self.db.query(EmailCampaign)
        if promoter_id is not None:
            query = query.filter(EmailCampaign.promoterID == promoter_id)
        return query.order_by(EmailCampaign.created_at.desc()).all()

    def get_campaign(self, campaign_id: int) -> Optional[EmailCampaign]:
        return self.db.get(EmailCampaign, campaign_id)

    def create_campaign(self, promoter_id: int, data: Dict[str, Any]) -> Tuple[bool, str, Optional[EmailCampaign]]:
        name = (data.get("name") or "").strip()
        subject = (data.get("subject") or "").strip()
        if not name or not subject:
            return False, "Campaign name and subject are required", None
        campaign = EmailCampaign(
            promoterID=promoter_id,
            name=name,
            subject=subject,
            preheader=data.get("preheader"),
            from_name=data.get("fromName"),
            html_content=sanitize_html(data.get("htmlContent")),
            segment=data.get("segment"),
            tags=list(data.get("tags") or []),
            status=CampaignStatus.DRAFT,
        )
        self.db.add(campaign)
        self.db.commit()
        return True, "Campaign created", campaign

    def update_campaign(self, campaign_id: int, data: Dict[str, Any]) -> Tuple[bool, str, Optional[EmailCampaign]]:
        campaign = self.get_campaign(campaign_id)
        if campaign is None:
            return False, "Campaign not found", None
        if campaign.status not in EDITABLE_STATUSES:
            return False, f"Campaign cannot be edited while {campaign.status.value}", None
        for key, attr in (("name", "name"), ("subject", "subject"), ("preheader", "preheader"), ("fromName", "from_name"), ("segment", "segment")):
            if key in data:
                setattr(campaign, attr, data[key])
        if "htmlContent" in data:
            campaign.html_content = sanitize_html(data["htmlContent"])
        if "tags" in data:
            campaign.tags = list(data["tags"] or [])
        self.db.commit()
        return True, "Campaign updated", campaign

    def delete_campaign(self, campaign_id: int) -> Tuple[bool, str, None]:
        campaign = self.get_campaign(campaign_id)
        if campaign is None:
            return False, "Campaign not found", None
        if campaign.status != CampaignStatus.DRAFT:
            return False, "Only draft campaigns can be deleted", None
        self.db.delete(campaign)
        self.db.commit()
        return True, "Campaign deleted", None

    def _transition(self, campaign_id: int, status: CampaignStatus) -> Tuple[bool, str, Optional[EmailCampaign]]:
        campaign = self.get_campaign(campaign_id)
        if campaign is None:
            return False, "Campaign not found", None
        try:
            campaign.transition_to(status)
        except ValueError as exc:
            return False, str(exc), campaign
        self.db.commit()
        return True, f"Campaign {status.value}", campaign

    def schedule(self, campaign_id: int, when: datetime, now: Optional[datetime] = None) -> Tuple[bool, str, Optional[EmailCampaign]]:
        now = now or utcnow()
        if when is None or ensure_utc(when) <= now:
            return False, "Scheduled time must be in the future", None
        ok, message, campaign = self._transition(campaign_id, CampaignStatus.SCHEDULED)
        if ok:
            campaign.scheduled_at = ensure_utc(when)
            self.db.commit()
        return ok, message, campaign

    def pause(self, campaign_id: int):
        return self._transition(campaign_id, CampaignStatus.PAUSED)

    def cancel(self, campaign_id: int):
        return self._transition(campaign_id, CampaignStatus.CANCELLED)

    def get_audience(self, campaign: EmailCampaign) -> List[EmailSubscriber]:
        subscribers = (
            self.db.query(EmailSubscriber)
            .filter(EmailSubscriber.promoterID == campaign.promoterID)
            .filter(EmailSubscriber.status == SubscriberStatus.SUBSCRIBED)
            .order_by(EmailSubscriber.subscriberID)
            .all()
        )
        if campaign.segment:
            subscribers = [s for s in subscribers if campaign.segment in (s.segments or [])]
        if campaign.tags:
            wanted = set(campaign.tags)
            subscribers = [s for s in subscribers if wanted & set(s.tags or [])]
        return subscribers

    @staticmethod
    def personalize(content: str, subscriber: EmailSubscriber) -> str:
        replacements = {
            "{{first_name}}": html_lib.escape(subscriber.first_name or "there"),
            "{{last_name}}": html_lib.escape(subscriber.last_name or ""),
            "{{email}}": html_lib.escape(subscriber.email),
        }
        for token, value in replacements.items():
            content = content.replace(token, value)
        return content

    @staticmethod
    def add_tracking(content: str, send_id: int) -> str:
        base = Config.PUBLIC_BASE_URL.rstrip("/")

        def _wrap(match: re.Match) -> str:
            return f'href="{base}/marketing/track/click/{send_id}?url={quote(match.group(1), safe="")}"'

        tracked = _HREF_PATTERN.sub(_wrap, content)
        pixel = f'<img src="{base}/marketing/track/open/{send_id}.gif" width="1" height="1" alt="">'
        unsubscribe = f'<p><a href="{base}/marketing/unsubscribe/{send_id}">Unsubscribe</a></p>'
        return f"{tracked}{unsubscribe}{pixel}"

    def send_now(self, campaign_id: int) -> Tuple[bool, str, Optional[EmailCampaign]]:
        campaign = self.get_campaign(campaign_id)
        if campaign is None:
            return False, "Campaign not found", None
        if campaign.status not in SENDABLE_STATUSES:
            return False, f"Campaign cannot be sent while {campaign.status.value}", campaign

        recipients = self.get_audience(campaign)
        campaign.transition_to(CampaignStatus.SENDING)
        self.db.commit()

        for subscriber in recipients:
            send = EmailSend(campaignID=campaign.campaignID, subscriberID=subscriber.subscriberID, email=subscriber.email)
            self.db.add(send)
            self.db.flush()
            body = self.add_tracking(self.personalize(campaign.html_content or "", subscriber), send.sendID)
            ok, message, provider_id = self.mailer.send(subscriber.email, campaign.subject, body, tags=["campaign"])
            campaign.sent_count += 1
            if ok:
                send.status = SendStatus.SENT
                send.sent_at = utcnow()
                send.provider_message_id = provider_id
                campaign.delivered_count += 1
            else:
                send.status = SendStatus.FAILED
                send.error = message
                campaign.bounced_count += 1

        campaign.transition_to(CampaignStatus.SENT)
        campaign.sent_at = utcnow()
        self.db.commit()
        increment_counter("campaigns_sent_total")
        record_event("campaign_sent", {"campaign_id": campaign.campaignID, "recipients": len(recipients)})
        self.logger.info(
            "Campaign %s sent",
            campaign.campaignID,
            extra={"recipients": len(recipients), "bounced": campaign.bounced_count},
        )
        return True, f"Sent to {len(recipients)} recipients", campaign

    # ------------------------------------------------------------------
    # Engagement
    # ------------------------------------------------------------------

    def _register_open(self, send: EmailSend, at: datetime) -> None:
        if send.opened_at is None:
            send.opened_at = at
            send.campaign.opened_count += 1

    def track_open(self, send_id: int) -> Optional[EmailSend]:
        send = self.db.get(EmailSend, send_id)
        if send is None:
            return None
        now = utcnow()
        send.engagements.append(EmailEngagement(event_type="open", occurred_at=now))
        self._register_open(send, now)
        self.db.commit()
        return send

    def track_click(self, send_id: int, url: str) -> Optional[EmailSend]:
        send = self.db.get(EmailSend, send_id)
        if send is None:
            return None
        now = utcnow()
        send.engagements.append(EmailEngagement(event_type="click", url=url, occurred_at=now))
        self._register_open(send, now)
        if send.clicked_at is None:
            send.clicked_at = now
            send.campaign.clicked_count += 1
        self.db.commit()
        return send

    def get_campaign_analytics(self, campaign_id: int) -> Optional[Dict[str, Any]]:
        campaign = self.get_campaign(campaign_id)
        if campaign is None:
            return None
        metrics = campaign.metrics
        total_delivered = metrics["delivered"] or metrics["sent"]

        clicks: Counter = Counter()
        opens_by_hour: Counter = Counter()
        for send in campaign.sends:
            for engagement in send.engagements:
                if engagement.event_type == "click" and engagement.url:
                    clicks[engagement.url] += 1
            if send.opened_at is not None:
                opens_by_hour[ensure_utc(send.opened_at).hour] += 1

        return {
            "metrics": metrics,
            "openRate": _percent(metrics["opened"], total_delivered),
            "clickRate": _percent(metrics["clicked"], total_delivered),
            "bounceRate": _percent(metrics["bounced"], metrics["sent"]),
            "unsubscribeRate": _percent(metrics["unsubscribed"], total_delivered),
            "clicksByLink": [
                {"url": url, "clicks": count}
                for url, count in sorted(clicks.items(), key=lambda item: item[1], reverse=True)
            ],
            "opensByHour": [{"hour": hour, "opens": count} for hour, count in sorted(opens_by_hour.items())],
        }
