from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace

from boxoffice.config import Config
from boxoffice.database import utcnow
from boxoffice.models import CampaignStatus, EmailSend, SendStatus, SubscriberStatus
from boxoffice.services.campaign_service import CampaignService
from conftest import create_promoter


class _StubMailer:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.sent = []

    def send(self, to, subject, html, tags=None, sender=None):
        self.sent.append({"to": to, "subject": subject, "html": html})
        if to in self.failing:
            return False, "Mailbox unavailable", None
        return True, "Sent", f"msg_{len(self.sent)}"


def _service(db_session, failing=()):
    mailer = _StubMailer(failing)
    return CampaignService(db_session, mailer=mailer), mailer


def test_add_subscriber_merges_tags_on_update(db_session, sample_promoter):
    service, _mailer = _service(db_session)
    pid = sample_promoter.promoterID

    ok, message, subscriber = service.add_subscriber(pid, {"email": " Fan@Example.com ", "firstName": "Fan", "tags": ["rock"]})
    assert ok and message == "Subscriber added"
    assert subscriber.email == "fan@example.com"
    assert subscriber.status == SubscriberStatus.SUBSCRIBED

    ok, message, subscriber = service.add_subscriber(pid, {"email": "fan@example.com", "tags": ["jazz"], "segments": ["vip"]})
    assert message == "Subscriber updated"
    assert subscriber.tags == ["jazz", "rock"]
    assert subscriber.segments == ["vip"]
    assert subscriber.first_name == "Fan"

    assert service.add_subscriber(pid, {"email": "not-an-email"})[1] == "A valid e-mail address is required"


def test_import_subscribers_counts_outcomes(db_session, sample_promoter):
    service, _mailer = _service(db_session)
    pid = sample_promoter.promoterID
    service.add_subscriber(pid, {"email": "existing@example.com"})

    result = service.import_subscribers(
        pid,
        [
            {"email": "new1@example.com", "firstName": "One"},
            {"email": "NEW2@example.com"},
            {"email": "existing@example.com"},
            {"email": "broken"},
            {"email": ""},
        ],
    )

    assert result == {"imported": 2, "duplicates": 1, "invalid": 2, "skipped": 3}
    assert len(service.list_subscribers(pid)) == 3
    assert service.list_subscribers(pid)[1].source == "import"


def test_campaign_html_is_sanitized_and_only_drafts_delete(db_session, sample_promoter):
    service, _mailer = _service(db_session)
    ok, _message, campaign = service.create_campaign(
        sample_promoter.promoterID,
        {"name": "Launch", "subject": "New shows", "htmlContent": '<p onclick="x()">Hi</p><script>alert(1)</script>'},
    )
    assert ok
    assert "<script>" not in campaign.html_content
    assert "onclick" not in campaign.html_content
    assert campaign.html_content.startswith("<p>Hi</p>")

    assert service.create_campaign(sample_promoter.promoterID, {"name": "x"})[1] == "Campaign name and subject are required"

    service.schedule(campaign.campaignID, utcnow() + timedelta(days=1))
    assert service.delete_campaign(campaign.campaignID)[1] == "Only draft campaigns can be deleted"


def test_schedule_requires_future_time(db_session, sample_promoter):
    service, _mailer = _service(db_session)
    _ok, _message, campaign = service.create_campaign(sample_promoter.promoterID, {"name": "A", "subject": "B"})
    now = utcnow()

    assert service.schedule(campaign.campaignID, now - timedelta(minutes=1), now=now)[1] == "Scheduled time must be in the future"

    ok, _message, campaign = service.schedule(campaign.campaignID, now + timedelta(hours=2), now=now)
    assert ok
    assert campaign.status == CampaignStatus.SCHEDULED

    assert service.pause(campaign.campaignID)[2].status == CampaignStatus.PAUSED
    assert service.cancel(campaign.campaignID)[2].status == CampaignStatus.CANCELLED
    ok, message, _campaign = service.pause(campaign.campaignID)
    assert not ok
    assert "Invalid campaign status transition" in message


def test_personalize_and_tracking():
    subscriber = SimpleNamespace(first_name=None, last_name="<b>", email="fan@example.com")
    assert CampaignService.personalize("Hi {{first_name}} {{last_name}}", subscriber) == "Hi there &lt;b&gt;"

    tracked = CampaignService.add_tracking('<a href="https://tix.example.com/show?id=1">Buy</a>', 7)
    base = Config.PUBLIC_BASE_URL.rstrip("/")
    assert f'href="{base}/marketing/track/click/7?url=https%3A%2F%2Ftix.example.com%2Fshow%3Fid%3D1"' in tracked
    assert f"{base}/marketing/unsubscribe/7" in tracked
    assert tracked.endswith(f'<img src="{base}/marketing/track/open/7.gif" width="1" height="1" alt="">')


def test_send_now_delivers_to_audience_and_tracks_engagement(db_session, sample_promoter):
    service, mailer = _service(db_session, failing={"bounce@example.com"})
    pid = sample_promoter.promoterID
    service.add_subscriber(pid, {"email": "ann@example.com", "firstName": "Ann", "segments": ["vip"]})
    service.add_subscriber(pid, {"email": "bob@example.com", "segments": ["vip"]})
    service.add_subscriber(pid, {"email": "bounce@example.com", "segments": ["vip"]})
    service.add_subscriber(pid, {"email": "casual@example.com"})
    service.add_subscriber(pid, {"email": "gone@example.com", "segments": ["vip"], "status": "unsubscribed"})
    other = create_promoter(db_session, slug="elsewhere")
    service.add_subscriber(other.promoterID, {"email": "stranger@example.com", "segments": ["vip"]})

    _ok, _message, campaign = service.create_campaign(
        pid,
        {"name": "VIP presale", "subject": "Presale", "segment": "vip", "htmlContent": '<p>Hi {{first_name}}</p><a href="https://tix.example.com">Buy</a>'},
    )

    ok, message, campaign = service.send_now(campaign.campaignID)

    assert ok
    assert message == "Sent to 3 recipients"
    assert campaign.status == CampaignStatus.SENT
    assert [sent["to"] for sent in mailer.sent] == ["ann@example.com", "bob@example.com", "bounce@example.com"]
    assert "Hi Ann" in mailer.sent[0]["html"]
    assert "Hi there" in mailer.sent[1]["html"]
    assert (campaign.sent_count, campaign.delivered_count, campaign.bounced_count) == (3, 2, 1)
    assert service.send_now(campaign.campaignID)[1] == "Campaign cannot be sent while sent"

    sends = {send.email: send for send in db_session.query(EmailSend).all()}
    assert sends["bounce@example.com"].status == SendStatus.FAILED
    assert sends["ann@example.com"].status == SendStatus.SENT

    service.track_open(sends["ann@example.com"].sendID)
    service.track_open(sends["ann@example.com"].sendID)
    service.track_click(sends["bob@example.com"].sendID, "https://tix.example.com")
    service.unsubscribe_from_send(sends["bob@example.com"].sendID)
    service.unsubscribe_from_send(sends["bob@example.com"].sendID)

    analytics = service.get_campaign_analytics(campaign.campaignID)
    assert analytics["metrics"]["opened"] == 2
    assert analytics["metrics"]["clicked"] == 1
    assert analytics["metrics"]["unsubscribed"] == 1
    assert analytics["openRate"] == 100.0
    assert analytics["clickRate"] == 50.0
    assert analytics["bounceRate"] == 33.33
    assert analytics["unsubscribeRate"] == 50.0
    assert analytics["clicksByLink"] == [{"url": "https://tix.example.com", "clicks": 1}]
    assert sum(bucket["opens"] for bucket in analytics["opensByHour"]) == 2


def test_tracking_unknown_send(db_session):
    service, _mailer = _service(db_session)
    assert service.track_open(12345) is None
    assert service.track_click(12345, "https://example.com") is None
    assert service.unsubscribe_from_send(12345)[1] == "Unknown e-mail"
    assert service.get_campaign_analytics(12345) is None
