from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import bleach
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from boxoffice.config import Config
from boxoffice.database import utcnow
from boxoffice.models import (
    BrandingType,
    Event,
    GatewayEnvironment,
    GatewayProvider,
    Order,
    OrderStatus,
    PaymentGateway,
    Promoter,
)

_SLUG_CLEANER = re.compile(r"[^a-z0-9]+")
_COLOR_KEYS = ("primary", "secondary", "accent", "background", "text")
REVENUE_STATUSES = (OrderStatus.CONFIRMED, OrderStatus.PARTIALLY_REFUNDED)
MASK_PREFIX = "****"


def slugify(value: str) -> str:
    return _SLUG_CLEANER.sub("-", (value or "").lower()).strip("-")


class PromoterService:
    """Tenant records, their Stripe gateways and commission bookkeeping."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)

    def _unique_slug(self, base: str, exclude_id: Optional[int] = None) -> str:
        base = slugify(base) or "promoter"
        candidate = base
        suffix = 2
        while True:
            query = self.db.query(Promoter.promoterID).filter(Promoter.slug == candidate)
            if exclude_id is not None:
                query = query.filter(Promoter.promoterID != exclude_id)
            if query.first() is None:
                return candidate
            candidate = f"{base}-{suffix}"
            suffix += 1

    @staticmethod
    def _clean_colors(colors: Optional[Dict[str, Any]]) -> Dict[str, str]:
        return {key: str(value) for key, value in (colors or {}).items() if key in _COLOR_KEYS and value}

    def create_promoter(self, data: Dict[str, Any]) -> Tuple[bool, str, Optional[Promoter]]:
        name = (data.get("name") or "").strip()
        if not name:
            return False, "Promoter name is required", None

        try:
            promoter = Promoter(
                name=name,
                email=(data.get("email") or "").strip().lower() or None,
                slug=self._unique_slug(data.get("slug") or name),
                logo_url=data.get("logo"),
                website=data.get("website"),
                description=bleach.clean(data.get("description") or "", tags=[], strip=True) or None,
                branding_type=BrandingType(data.get("brandingType") or BrandingType.BASIC.value),
                color_scheme=self._clean_colors(data.get("colorScheme")),
                commission_rate=data.get("commission", Config.DEFAULT_COMMISSION_RATE),
                custom_domain=(data.get("customDomain") or "").strip().lower() or None,
                is_master=bool(data.get("isMaster", False)),
                active=bool(data.get("active", True)),
            )
            self.db.add(promoter)
            self.db.commit()
        except ValueError as exc:
            self.db.rollback()
            return False, str(exc), None
        except SQLAlchemyError as exc:
            self.db.rollback()
            self.logger.error("Error creating promoter: %s", exc)
            return False, f"Error creating promoter: {exc}", None

        self.logger.info("Created promoter %s", promoter.promoterID, extra={"slug": promoter.slug})
        return True, "Promoter created successfully", promoter

    def update_promoter(self, promoter_id: int, data: Dict[str, Any]) -> Tuple[bool, str, Optional[Promoter]]:
        promoter = self.get_promoter(promoter_id)
        if promoter is None:
            return False, "Promoter not found", None

        try:
            if "name" in data and data["name"]:
                promoter.name = data["name"].strip()
            if "slug" in data and data["slug"]:
                promoter.slug = self._unique_slug(data["slug"], exclude_id=promoter.promoterID)
            if "email" in data:
                promoter.email = (data["email"] or "").strip().lower() or None
            if "logo" in data:
                promoter.logo_url = data["logo"]
            if "website" in data:
                promoter.website = data["website"]
            if "description" in data:
                promoter.description = bleach.clean(data["description"] or "", tags=[], strip=True) or None
            if "brandingType" in data:
                promoter.branding_type = BrandingType(data["brandingType"])
            if "colorScheme" in data:
                promoter.color_scheme = self._clean_colors(data["colorScheme"])
            if "commission" in data:
                promoter.commission_rate = float(data["commission"])
            if "customDomain" in data:
                promoter.custom_domain = (data["customDomain"] or "").strip().lower() or None
            if "active" in data:
                promoter.active = bool(data["active"])
            self.db.commit()
        except (ValueError, TypeError) as exc:
            self.db.rollback()
            return False, str(exc), None
        except SQLAlchemyError as exc:
            self.db.rollback()
            self.logger.error("Error updating promoter %s: %s", promoter_id, exc)
            return False, f"Error updating promoter: {exc}", None

        return True, "Promoter updated", promoter

    def deactivate_promoter(self, promoter_id: int) -> Tuple[bool, str, Optional[Promoter]]:
        promoter = self.get_promoter(promoter_id)
        if promoter is None:
            return False, "Promoter not found", None
        promoter.active = False
        self.db.commit()
        self.logger.info("Deactivated promoter %s", promoter_id)
        return True, "Promoter deactivated", promoter

    def get_promoter(self, promoter_id: int) -> Optional[Promoter]:
        return self.db.get(Promoter, promoter_id)

    def get_by_slug(self, slug: str) -> Optional[Promoter]:
        if not slug:
            return None
        return (
            self.db.query(Promoter)
            .filter(Promoter.slug == slug.strip().lower())
            .filter(Promoter.active.is_(True))
            .first()
        )

    def list_promoters(self, include_inactive: bool = True) -> List[Promoter]:
        query = self.db.query(Promoter)
        if not include_inactive:
            query = query.filter(Promoter.active.is_(True))
        return query.order_by(Promoter.name).all()

    def get_stats(self, promoter_id: int) -> Dict[str, Any]:
        promoter = self.get_promoter(promoter_id)
        if promoter is None:
            return {}

        now = utcnow()
        events = self.db.query(Event).filter(Event.promoterID == promoter_id).all()
        active_events = sum(1 for event in events if event.is_upcoming(now))

        total_orders = self.db.query(func.count(Order.orderID)).filter(Order.promoterID == promoter_id).scalar() or 0
        revenue = (
            self.db.query(func.coalesce(func.sum(Order.total - Order.refunded_amount), 0))
            .filter(Order.promoterID == promoter_id)
            .filter(Order.status.in_(REVENUE_STATUSES))
            .scalar()
        )
        revenue = round(float(revenue or 0), 2)
        commission = round(revenue * float(promoter.commission_rate or 0) / 100, 2)
        paid = round(float(promoter.commission_paid or 0), 2)
        return {
            "totalEvents": len(events),
            "activeEvents": active_events,
            "totalOrders": int(total_orders),
            "revenue": revenue,
            "commission": commission,
            "commissionPaid": paid,
            "pendingCommission": round(max(0.0, commission - paid), 2),
        }

    def record_commission_payout(self, promoter_id: int, amount: float) -> Tuple[bool, str, Optional[Promoter]]:
        promoter = self.get_promoter(promoter_id)
        if promoter is None:
            return False, "Promoter not found", None
        if amount is None or float(amount) <= 0:
            return False, "Payout amount must be positive", None
        promoter.commission_paid = round(float(promoter.commission_paid or 0) + float(amount), 2)
        self.db.commit()
        self.logger.info("Recorded commission payout", extra={"promoter": promoter_id, "amount": amount})
        return True, "Payout recorded", promoter

    def set_payment_gateway(self, promoter_id: int, data: Dict[str, Any]) -> Tuple[bool, str, Optional[PaymentGateway]]:
        promoter = self.get_promoter(promoter_id)
        if promoter is None:
            return False, "Promoter not found", None

        try:
            provider = GatewayProvider(data.get("provider") or GatewayProvider.STRIPE.value)
            environment = GatewayEnvironment(data.get("environment") or GatewayEnvironment.SANDBOX.value)
        except ValueError as exc:
            return False, str(exc), None

        credentials = {
            key: value
            for key, value in (data.get("credentials") or {}).items()
            if value and not str(value).startswith(MASK_PREFIX)
        }
        gateway = self.db.query(PaymentGateway).filter_by(promoterID=promoter_id).first()
        if gateway is None:
            gateway = PaymentGateway(promoterID=promoter_id)
            self.db.add(gateway)
            merged = credentials
        else:
            # Blank or masked fields keep what is already stored.
            merged = {**(gateway.credentials or {}), **credentials}
        gateway.provider = provider
        gateway.environment = environment
        gateway.credentials = merged
        gateway.is_active = bool(data.get("isActive", True))
        self.db.commit()
        self.logger.info(
            "Payment gateway saved",
            extra={"promoter": promoter_id, "provider": provider.value, "environment": environment.value},
        )
        return True, "Payment gateway saved", gateway

    def get_payment_gateway(self, promoter_id: int) -> Optional[PaymentGateway]:
        return self.db.query(PaymentGateway).filter_by(promoterID=promoter_id).first()
