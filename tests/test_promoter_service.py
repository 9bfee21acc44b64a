import pytest

from boxoffice.models import EventStatus, OrderStatus
from boxoffice.services.promoter_service import PromoterService, slugify
from conftest import create_event, create_order, create_promoter


@pytest.mark.parametrize(
    "value, expected",
    [
        ("Rock House", "rock-house"),
        ("  Stubb's BBQ & Bar ", "stubb-s-bbq-bar"),
        ("---", ""),
        (None, ""),
    ],
)
def test_slugify(value, expected):
    assert slugify(value) == expected


def test_create_promoter_cleans_input(db_session, sample_promoter):
    service = PromoterService(db_session)

    ok, message, promoter = service.create_promoter(
        {
            "name": "Rock House",
            "slug": "rockhouse",
            "email": " Booking@RockHouse.com ",
            "description": "<script>x()</script>Live music <b>nightly</b>",
            "colorScheme": {"primary": "#ff0000", "shadow": "#000", "accent": ""},
            "customDomain": "Tickets.RockHouse.com",
        }
    )

    assert ok, message
    assert promoter.slug == "rockhouse-2"
    assert promoter.email == "booking@rockhouse.com"
    assert "<" not in promoter.description
    assert promoter.description.endswith("Live music nightly")
    assert promoter.color_scheme == {"primary": "#ff0000"}
    assert promoter.custom_domain == "tickets.rockhouse.com"
    assert float(promoter.commission_rate) == 10.0


def test_create_promoter_rejections(db_session):
    service = PromoterService(db_session)
    assert service.create_promoter({"name": "  "}) == (False, "Promoter name is required", None)
    ok, message, _ = service.create_promoter({"name": "Odd", "brandingType": "platinum"})
    assert not ok
    assert "platinum" in message


def test_update_and_lookup(db_session, sample_promoter):
    service = PromoterService(db_session)
    other = create_promoter(db_session, slug="taken")

    ok, _, promoter = service.update_promoter(sample_promoter.promoterID, {"slug": "taken", "commission": "12.5"})

    assert ok
    assert promoter.slug == "taken-2"
    assert float(promoter.commission_rate) == 12.5
    assert service.get_by_slug(" TAKEN ").promoterID == other.promoterID
    assert service.update_promoter(99999, {"name": "x"}) == (False, "Promoter not found", None)

    service.deactivate_promoter(other.promoterID)
    assert service.get_by_slug("taken") is None
    assert [p.slug for p in service.list_promoters(include_inactive=False)] == ["taken-2"]


def test_stats_and_commission(db_session, sample_promoter, sample_event):
    create_event(db_session, sample_promoter, days_ahead=-3, name="Last week")
    create_event(db_session, sample_promoter, status=EventStatus.DRAFT, name="Draft")
    create_order(db_session, sample_event)
    create_order(db_session, sample_event, status=OrderStatus.PARTIALLY_REFUNDED, refunded=10)
    create_order(db_session, sample_event, status=OrderStatus.PENDING)
    service = PromoterService(db_session)

    assert service.record_commission_payout(sample_promoter.promoterID, 0)[1] == "Payout amount must be positive"
    assert service.record_commission_payout(sample_promoter.promoterID, 5)[0]
    stats = service.get_stats(sample_promoter.promoterID)

    assert stats["totalEvents"] == 3
    assert stats["totalOrders"] == 3
    assert stats["revenue"] == 210.0
    assert stats["commission"] == 21.0
    assert stats["commissionPaid"] == 5.0
    assert stats["pendingCommission"] == 16.0
    assert service.get_stats(99999) == {}


def test_gateway_keeps_secrets_on_blank_or_masked_input(db_session):
    promoter = create_promoter(db_session, with_gateway=False)
    service = PromoterService(db_session)

    ok, _, gateway = service.set_payment_gateway(
        promoter.promoterID,
        {"credentials": {"secretKey": "sk_live_abcd1234", "publishableKey": "pk_live_1"}, "environment": "live"},
    )
    assert ok
    masked = gateway.to_dict()["credentials"]
    assert masked["secretKey"] == "****1234"
    assert masked["publishableKey"] == "pk_live_1"

    service.set_payment_gateway(
        promoter.promoterID,
        {"credentials": {**masked, "webhookSecret": "whsec_new"}, "environment": "live"},
    )
    gateway = service.get_payment_gateway(promoter.promoterID)
    assert gateway.secret_key == "sk_live_abcd1234"
    assert gateway.webhook_secret == "whsec_new"

    assert service.set_payment_gateway(promoter.promoterID, {"provider": "paypal-ish"})[0] is False
