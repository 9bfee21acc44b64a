from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from boxoffice.database import ensure_utc, utcnow
from boxoffice.models import Promotion, PromotionType
from boxoffice.observability import increment_counter
from boxoffice.services.access import PromoterAccess


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


class PromotionService:
    """Promo codes: CRUD scoped by promoter, validation and redemption."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def list_promotions(self, access: PromoterAccess) -> List[Promotion]:
        query = access.scope_query(self.db.query(Promotion), Promotion.promoterID)
        return query.order_by(Promotion.created_at.desc()).all()

    def get_promotion(self, promotion_id: int, access: Optional[PromoterAccess] = None) -> Optional[Promotion]:
        promotion = self.db.get(Promotion, promotion_id)
        if promotion is None or (access is not None and not access.can_access(promotion.promoterID)):
            return None
        return promotion

    def _apply(self, promotion: Promotion, data: Dict[str, Any]) -> None:
        if "code" in data:
            code = (data.get("code") or "").strip().upper()
            if not code:
                raise ValueError("Promo code is required")
            promotion.code = code
        if "type" in data:
            promotion.promo_type = PromotionType(data.get("type") or PromotionType.PERCENTAGE.value)
        if "value" in data:
            value = float(data["value"])
            if value < 0:
                raise ValueError("Promotion value cannot be negative")
            promotion.value = value
        if "description" in data:
            promotion.description = data["description"]
        if "eventId" in data:
            promotion.eventID = data["eventId"] or None
        if "startsAt" in data:
            promotion.starts_at = _parse_datetime(data["startsAt"])
        if "endsAt" in data:
            promotion.ends_at = _parse_datetime(data["endsAt"])
        if "maxUses" in data:
            promotion.max_uses = int(data["maxUses"]) if data["maxUses"] not in (None, "") else None
        if "active" in data:
            promotion.active = bool(data["active"])

    def create_promotion(self, access: PromoterAccess, data: Dict[str, Any]) -> Tuple[bool, str, Optional[Promotion]]:
        promotion = Promotion(promoterID=access.owning_promoter(data.get("promoterId")), used_count=0, active=True)
        try:
            self._apply(promotion, {"type": PromotionType.PERCENTAGE.value, **data, "code": data.get("code")})
        except (TypeError, ValueError) as exc:
            return False, str(exc), None
        self.db.add(promotion)
        self.db.commit()
        self.logger.info("Promotion created", extra={"code": promotion.code, "promoter": promotion.promoterID})
        return True, "Promotion created", promotion

    def update_promotion(self, promotion_id: int, access: PromoterAccess, data: Dict[str, Any]) -> Tuple[bool, str, Optional[Promotion]]:
        promotion = self.get_promotion(promotion_id, access)
        if promotion is None:
            return False, "Promotion not found", None
        try:
            self._apply(promotion, data)
        except (TypeError, ValueError) as exc:
            self.db.rollback()
            return False, str(exc), None
        self.db.commit()
        return True, "Promotion updated", promotion

    def delete_promotion(self, promotion_id: int, access: PromoterAccess) -> Tuple[bool, str, None]:
        promotion = self.get_promotion(promotion_id, access)
        if promotion is None:
            return False, "Promotion not found", None
        self.db.delete(promotion)
        self.db.commit()
        return True, "Promotion deleted", None

    def find_promotion(self, code: str, event_id: Optional[int] = None) -> Optional[Promotion]:
        """Global (event-less) promotion first, then one scoped to the event."""
        normalized = (code or "").strip().upper()
        promotion = (
            self.db.query(Promotion)
            .filter(Promotion.code == normalized)
            .filter(Promotion.active.is_(True))
            .filter(Promotion.eventID.is_(None))
            .first()
        )
        if promotion is None and event_id is not None:
            promotion = (
                self.db.query(Promotion)
                .filter(Promotion.code == normalized)
                .filter(Promotion.active.is_(True))
                .filter(Promotion.eventID == event_id)
                .first()
            )
        return promotion

    def validate_code(
        self,
        code: Optional[str],
        promoter_id: Optional[int] = None,
        event_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
        if not code or not str(code).strip():
            return False, "Promo code is required", None

        promotion = self.find_promotion(code, event_id)
        if promotion is None:
            return False, "Invalid promo code", None
        if promotion.promoterID is not None and promoter_id is not None and promotion.promoterID != int(promoter_id):
            return False, "This code is not valid for this promoter", None
        if promotion.eventID is not None and (event_id is None or promotion.eventID != int(event_id)):
            return False, "This code is not valid for this event", None

        now = now or utcnow()
        if promotion.starts_at and ensure_utc(promotion.starts_at) > now:
            return False, "This promo code is not yet active", None
        if promotion.ends_at and ensure_utc(promotion.ends_at) < now:
            return False, "This promo code has expired", None
        if promotion.max_uses is not None and (promotion.used_count or 0) >= promotion.max_uses:
            return False, "This promo code has reached its usage limit", None

        return True, "Promo code applied", {
            "id": promotion.promotionID,
            "code": promotion.code,
            "type": (promotion.promo_type or PromotionType.PERCENTAGE).value,
            "value": float(promotion.value or 0),
            "description": promotion.description,
        }

    @staticmethod
    def calculate_discount(promotion: Dict[str, Any] | Promotion, subtotal: float) -> float:
        if isinstance(promotion, Promotion):
            promo_type, value = promotion.promo_type.value, float(promotion.value or 0)
        else:
            promo_type = promotion.get("type") or PromotionType.PERCENTAGE.value
            value = float(promotion.get("value") or 0)
        subtotal = max(0.0, float(subtotal))
        if promo_type == PromotionType.FIXED.value:
            discount = min(value, subtotal)
        else:
            discount = subtotal * min(value, 100.0) / 100
        return round(max(0.0, discount), 2)

    def redeem(self, promotion_id: Optional[int]) -> Optional[Promotion]:
        if promotion_id is None:
            return None
        promotion = self.db.get(Promotion, promotion_id)
        if promotion is None:
            return None
        promotion.used_count = (promotion.used_count or 0) + 1
        increment_counter("promotions_redeemed_total")
        return promotion
