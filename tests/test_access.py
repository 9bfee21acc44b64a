from __future__ import annotations

from types import SimpleNamespace

import pytest

from boxoffice.models import Promotion, PromotionType, UserRole
from boxoffice.services.access import ALL_PROMOTERS, PromoterAccess


def _user(role, promoter_id=None, user_id=1):
    return SimpleNamespace(
        userID=user_id,
        promoterID=promoter_id,
        is_admin=role in (UserRole.ADMIN.value, UserRole.SUPERADMIN.value),
    )


@pytest.mark.parametrize("selected", [None, "", ALL_PROMOTERS])
def test_admin_without_selection_sees_everything(selected):
    access = PromoterAccess.for_user(_user(UserRole.ADMIN.value), selected)
    assert access.show_all
    assert access.effective_promoter == ALL_PROMOTERS
    assert access.can_access(7)
    assert access.can_access(None)


def test_admin_selecting_a_promoter_also_sees_unowned_records():
    access = PromoterAccess.for_user(_user(UserRole.ADMIN.value), "3")
    assert access.promoter_id == 3
    assert access.can_access(3)
    assert access.can_access(None)
    assert not access.can_access(4)


def test_promoter_user_is_pinned_to_own_promoter():
    access = PromoterAccess.for_user(_user(UserRole.PROMOTER.value, promoter_id=5), selected="all")
    assert not access.show_all
    assert access.effective_promoter == 5
    assert access.can_access("5")
    assert not access.can_access(None)
    assert not access.can_access(6)
    assert access.owning_promoter(requested=9) == 5


def test_anonymous_access_sees_nothing():
    access = PromoterAccess.for_user(None)
    assert not access.can_access(1)
    assert not access.can_access(None)


def test_owning_promoter_for_admin():
    assert PromoterAccess.for_user(_user(UserRole.ADMIN.value), "all").owning_promoter(8) == 8
    assert PromoterAccess.for_user(_user(UserRole.ADMIN.value), "2").owning_promoter() == 2


def test_filter_items_reads_dicts_and_nested_events():
    access = PromoterAccess.for_user(_user(UserRole.PROMOTER.value, promoter_id=1))
    items = [
        {"promoterId": 1, "name": "own"},
        {"promoterId": 2, "name": "other"},
        {"event": {"promoter_id": "1"}, "name": "nested"},
        SimpleNamespace(promoterID=None, event=SimpleNamespace(promoterID=1), name="via-event"),
        {"name": "orphan"},
    ]
    names = [item["name"] if isinstance(item, dict) else item.name for item in access.filter_items(items)]
    assert names == ["own", "nested", "via-event"]


def test_scope_query(db_session, sample_promoter):
    db_session.add_all(
        [
            Promotion(promoterID=sample_promoter.promoterID, code="MINE", promo_type=PromotionType.FIXED, value=5),
            Promotion(promoterID=None, code="GLOBAL", promo_type=PromotionType.FIXED, value=5),
            Promotion(promoterID=sample_promoter.promoterID + 1, code="THEIRS", promo_type=PromotionType.FIXED, value=5),
        ]
    )
    db_session.commit()

    def codes(access):
        query = access.scope_query(db_session.query(Promotion), Promotion.promoterID)
        return sorted(promotion.code for promotion in query.all())

    promoter_access = PromoterAccess.for_user(_user(UserRole.PROMOTER.value, sample_promoter.promoterID))
    admin_scoped = PromoterAccess.for_user(_user(UserRole.ADMIN.value), sample_promoter.promoterID)

    assert codes(promoter_access) == ["MINE"]
    assert codes(admin_scoped) == ["GLOBAL", "MINE"]
    assert codes(PromoterAccess.for_user(_user(UserRole.ADMIN.value))) == ["GLOBAL", "MINE", "THEIRS"]
    assert codes(PromoterAccess.for_user(None)) == []
