"""Promoter-scoped visibility rules shared by the back-office services."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from sqlalchemy import false, or_

ALL_PROMOTERS = "all"

_PROMOTER_KEYS = ("promoterId", "promoter_id", "promoterID")


def _read_promoter_id(item: Any) -> Optional[int]:
    if isinstance(item, dict):
        for key in _PROMOTER_KEYS:
            if item.get(key) is not None:
                return _as_int(item[key])
        event = item.get("event")
        if event is not None:
            return _read_promoter_id(event)
        return None
    value = getattr(item, "promoterID", None)
    if value is not None:
        return _as_int(value)
    event = getattr(item, "event", None)
    if event is not None:
        return _read_promoter_id(event)
    return None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class PromoterAccess:
    """
    What a signed-in user may see.

    Promoter users are pinned to their own promoter. Admins pick a promoter
    (or ``"all"``) and additionally see records that belong to nobody.
    """

    user_id: Optional[int]
    is_admin: bool
    promoter_id: Optional[int]
    show_all: bool

    @classmethod
    def for_user(cls, user, selected: Any = None) -> "PromoterAccess":
        if user is None:
            return cls(user_id=None, is_admin=False, promoter_id=None, show_all=False)
        if user.is_admin:
            if selected in (None, "", ALL_PROMOTERS):
                return cls(user_id=user.userID, is_admin=True, promoter_id=None, show_all=True)
            return cls(user_id=user.userID, is_admin=True, promoter_id=_as_int(selected), show_all=False)
        return cls(user_id=user.userID, is_admin=False, promoter_id=user.promoterID, show_all=False)

    @property
    def effective_promoter(self) -> Any:
        return ALL_PROMOTERS if self.show_all else self.promoter_id

    def can_access(self, promoter_id: Optional[int]) -> bool:
        if self.show_all:
            return True
        if promoter_id is None:
            return self.is_admin
        return self.promoter_id is not None and int(promoter_id) == self.promoter_id

    def filter_items(self, items: Iterable[Any]) -> List[Any]:
        return [item for item in items if self.can_access(_read_promoter_id(item))]

    def scope_query(self, query, column):
        if self.show_all:
            return query
        if self.promoter_id is None:
            return query.filter(column.is_(None)) if self.is_admin else query.filter(false())
        if self.is_admin:
            return query.filter(or_(column == self.promoter_id, column.is_(None)))
        return query.filter(column == self.promoter_id)

    def owning_promoter(self, requested: Optional[int] = None) -> Optional[int]:
        """Promoter a newly created record should belong to."""
        if not self.is_admin:
            return self.promoter_id
        return _as_int(requested) if requested is not None else self.promoter_id
