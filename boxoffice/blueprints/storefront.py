from __future__ import annotations

import logging

from flask import Blueprint, abort, jsonify, request

from boxoffice.blueprints.guards import cart_key, current_user, error, json_body
from boxoffice.database import get_db
from boxoffice.models import EventStatus
from boxoffice.services.admin_service import AdminService
from boxoffice.services.branding_service import BrandingService
from boxoffice.services.checkout_service import CheckoutService
from boxoffice.services.order_service import OrderService, serialize_order
from boxoffice.services.promoter_service import PromoterService
from boxoffice.services.promotion_service import PromotionService

storefront_bp = Blueprint("storefront", __name__)
logger = logging.getLogger(__name__)


def _active_promoter_or_404(slug: str):
    promoter = PromoterService(get_db()).get_by_slug(slug)
    if promoter is None or not promoter.active:
        abort(404)
    return promoter


@storefront_bp.route("/p/<slug>", methods=["GET"])
def promoter_home(slug: str):
    db = get_db()
    promoter = _active_promoter_or_404(slug)
    events = AdminService(db).list_public_events(promoter.promoterID)
    return jsonify(
        {
            "promoter": promoter.to_dict(),
            "theme": BrandingService(db).get_theme_for_promoter(promoter.promoterID),
            "events": [event.to_dict() for event in events],
        }
    )


@storefront_bp.route("/p/<slug>/events/<int:event_id>", methods=["GET"])
def promoter_event(slug: str, event_id: int):
    db = get_db()
    promoter = _active_promoter_or_404(slug)
    admin = AdminService(db)
    event = admin.get_event(event_id)
    if event is None or event.promoterID != promoter.promoterID or event.status != EventStatus.PUBLISHED:
        abort(404)
    return jsonify({"event": event.to_dict(), "availability": admin.get_availability(event)})


@storefront_bp.route("/api/create-payment-intent", methods=["POST"])
def create_payment_intent():
    data = json_body()
    user = current_user()
    ok, message, result = CheckoutService(get_db()).create_payment_intent(
        data.get("promoterSlug") or data.get("promoter"),
        data.get("items"),
        customer=data.get("customer"),
        promo_code=data.get("promoCode"),
        session_key=cart_key(),
        user_id=user.userID if user is not None else None,
    )
    if not ok:
        return error(message, result["status"], code=result["code"])
    return jsonify(result)


@storefront_bp.route("/api/promotions/validate", methods=["POST"])
def validate_promotion():
    data = json_body()
    promoter_id = None
    if data.get("promoterSlug"):
        promoter_id = _active_promoter_or_404(data["promoterSlug"]).promoterID
    service = PromotionService(get_db())
    ok, message, promotion = service.validate_code(data.get("code"), promoter_id, data.get("eventId"))
    if not ok:
        return jsonify({"valid": False, "error": message}), 400

    payload = {"valid": True, "message": message, "promotion": promotion}
    if data.get("subtotal") is not None:
        try:
            payload["discount"] = service.calculate_discount(promotion, float(data["subtotal"]))
        except (TypeError, ValueError):
            return error("subtotal must be a number")
    return jsonify(payload)


@storefront_bp.route("/api/holds", methods=["POST"])
def create_hold():
    data = json_body()
    try:
        event_id = int(data.get("eventId"))
    except (TypeError, ValueError):
        return error("eventId is required")
    ok, message, hold = CheckoutService(get_db()).hold_tickets(event_id, cart_key(), data.get("quantity", 1))
    if not ok:
        status = 404 if message == "Event not found" else 409 if message.startswith("Only") else 400
        return error(message, status)
    return (
        jsonify(
            {
                "holdId": hold.holdID,
                "eventId": hold.eventID,
                "quantity": hold.quantity,
                "expiresAt": hold.expires_at.isoformat(),
            }
        ),
        201,
    )


@storefront_bp.route("/api/holds/<int:hold_id>", methods=["DELETE"])
def release_hold(hold_id: int):
    ok, message, _hold = CheckoutService(get_db()).release_hold(hold_id, cart_key())
    if not ok:
        return error(message, 404)
    return jsonify({"success": True, "message": message})


@storefront_bp.route("/api/orders/<identifier>/confirmation", methods=["GET"])
def order_confirmation(identifier: str):
    service = OrderService(get_db())
    order = service.get_public_order(identifier)
    if order is None:
        return error("Order not found", 404)
    order = service.reconcile_order(
        order,
        redirect_status=request.args.get("redirect_status"),
        payment_intent_id=request.args.get("payment_intent"),
    )
    return jsonify({"order": serialize_order(order)})


@storefront_bp.route("/api/theme", methods=["GET"])
def host_theme():
    branding = BrandingService(get_db())
    promoter = branding.resolve_host(request.host) or branding.get_master_promoter()
    if promoter is None:
        return jsonify({"promoter": None, "theme": None})
    return jsonify(
        {
            "promoter": {"id": promoter.promoterID, "slug": promoter.slug, "name": promoter.name},
            "theme": branding.get_theme_for_promoter(promoter.promoterID),
        }
    )
