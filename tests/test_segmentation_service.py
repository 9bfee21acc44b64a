from __future__ import annotations

from datetime import timedelta

import pytest

from boxoffice.database import utcnow
from boxoffice.models import OrderStatus
from boxoffice.services.access import PromoterAccess
from boxoffice.services.segmentation_service import (
    SegmentationService,
    cut_points,
    quintile_score,
    rfm_segment_name,
)
from conftest import create_event, create_order, create_promoter


def _access(promoter):
    return PromoterAccess(user_id=None, is_admin=False, promoter_id=promoter.promoterID, show_all=False)


@pytest.fixture
def shoppers(db_session, sample_promoter):
    """alice buys often and recently, bob once long ago, carol once recently."""
    now = utcnow()
    event = create_event(db_session, sample_promoter, category="rock", venue_name="Stubb's")
    for days in (5, 15, 25):
        create_order(db_session, event, email="alice@example.com", name="Alice", created_at=now - timedelta(days=days))
    create_order(db_session, event, email="bob@example.com", name="Bob", created_at=now - timedelta(days=200))
    create_order(db_session, event, quantity=1, email="carol@example.com", name="Carol", created_at=now - timedelta(days=10))
    create_order(db_session, event, email="dave@example.com", status=OrderStatus.PENDING, created_at=now)

    elsewhere = create_event(db_session, create_promoter(db_session, slug="elsewhere"))
    create_order(db_session, elsewhere, email="eve@example.com")
    return now


def test_cut_points_and_quintiles():
    assert cut_points([]) == [0, 0, 0, 0, 0]
    cuts = cut_points([5, 1, 4, 2, 3])
    assert cuts == [0, 2, 3, 4, 5]
    assert quintile_score(5, cuts) == 5
    assert quintile_score(3, cuts) == 3
    assert quintile_score(1, cuts) == 1
    assert quintile_score(1, cuts, inverse=True) == 5
    assert quintile_score(5, cuts, inverse=True) == 2
    assert quintile_score(9, cuts, inverse=True) == 1


@pytest.mark.parametrize(
    "scores, name",
    [
        ((5, 5, 5), "Champions"),
        ((2, 4, 4), "Loyal Customers"),
        ((5, 3, 1), "Potential Loyalist"),
        ((5, 1, 1), "New Customer"),
        ((1, 3, 1), "At Risk"),
        ((1, 1, 3), "Hibernating"),
        ((1, 1, 1), "Lost"),
        ((3, 3, 5), "Big Spender"),
        ((3, 3, 3), "Regular"),
    ],
)
def test_rfm_segment_name(scores, name):
    assert rfm_segment_name(*scores) == name


def test_build_profiles_scores_paid_orders_only(db_session, sample_promoter, shoppers):
    profiles = {p.email: p for p in SegmentationService(db_session).build_profiles(_access(sample_promoter), shoppers)}

    assert sorted(profiles) == ["alice@example.com", "bob@example.com", "carol@example.com"]

    alice = profiles["alice@example.com"]
    assert (alice.rfm.recency, alice.rfm.frequency, alice.rfm.monetary) == (5, 5, 5)
    assert alice.rfm.segment == "Champions"
    assert alice.rfm.score == 555
    assert alice.total_orders == 3
    assert alice.total_spent == 330.0
    assert alice.average_order_value == 110.0
    assert alice.churn_probability == 10
    assert alice.engagement_score == 100
    assert alice.lifetime_value == 14454.0
    assert alice.categories == ["rock"]
    assert alice.venues == ["Stubb's"]

    bob = profiles["bob@example.com"]
    assert (bob.rfm.recency, bob.rfm.frequency, bob.rfm.monetary) == (2, 4, 4)
    assert bob.rfm.segment == "Loyal Customers"

    carol = profiles["carol@example.com"]
    assert carol.rfm.segment == "Potential Loyalist"
    assert carol.churn_probability == 7
    assert carol.to_dict()["rfmScore"]["score"] == 442


def test_segments_and_insights(db_session, sample_promoter, shoppers):
    service = SegmentationService(db_session)
    access = _access(sample_promoter)

    segments = {segment["id"]: segment for segment in service.get_segments(access, shoppers)}

    assert list(segments) == ["champions", "loyal", "new-customers", "at-risk", "lost", "high-value"]
    assert segments["champions"]["customerCount"] == 1
    assert segments["champions"]["totalRevenue"] == 330.0
    assert segments["champions"]["characteristics"]["topCategories"] == ["rock"]
    assert segments["at-risk"]["customers"][0]["email"] == "bob@example.com"
    assert segments["new-customers"]["customers"][0]["email"] == "carol@example.com"

    insights = service.get_insights(access, shoppers)
    assert [item["segmentId"] for item in insights] == ["champions", "at-risk", "new-customers"]
    assert insights[0]["potentialRevenue"] == 66.0
    assert insights[1]["potentialRevenue"] == 220.0
    assert "potentialRevenue" not in insights[2]


def test_customer_profile_and_similar_customers(db_session, sample_promoter, shoppers):
    service = SegmentationService(db_session)
    access = _access(sample_promoter)

    assert service.get_customer_profile(access, " ALICE@example.com ").name == "Alice"
    assert service.get_customer_profile(access, "eve@example.com") is None

    similar = service.get_similar_customers(access, "alice@example.com", limit=1)
    assert [profile.email for profile in similar] == ["carol@example.com"]
    assert service.get_similar_customers(access, "nobody@example.com") == []


def test_admin_sees_every_promoter(db_session, shoppers):
    access = PromoterAccess(user_id=1, is_admin=True, promoter_id=None, show_all=True)
    emails = {profile.email for profile in SegmentationService(db_session).build_profiles(access, shoppers)}
    assert "eve@example.com" in emails
