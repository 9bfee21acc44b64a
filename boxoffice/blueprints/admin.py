from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Optional

from flask import Blueprint, abort, current_app, jsonify, request, send_file

from boxoffice.blueprints.guards import (
    admin_required,
    current_access,
    current_user,
    error,
    int_arg,
    json_body,
    login_required,
    require_promoter,
    respond,
)
from boxoffice.database import ensure_utc, get_db
from boxoffice.models import DashboardAlert, PromoterGoal, Theme
from boxoffice.services.admin_service import AdminService
from boxoffice.services.affiliate_service import AffiliateImportService
from boxoffice.services.branding_service import BrandingService, clear_theme_cache
from boxoffice.services.dashboard_service import DashboardService
from boxoffice.services.document_service import DocumentService
from boxoffice.services.legacy_import_service import LegacyImportService
from boxoffice.services.notification_service import NotificationService
from boxoffice.services.order_service import OrderService, serialize_order
from boxoffice.services.promoter_service import PromoterService
from boxoffice.services.promotion_service import PromotionService
from boxoffice.services.refund_service import RefundService
from boxoffice.services.segmentation_service import SegmentationService

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")
logger = logging.getLogger(__name__)


@admin_bp.before_request
@login_required
def _require_back_office_user():
    return None


def _parse_datetime_arg(name: str) -> Optional[datetime]:
    value = request.args.get(name)
    if not value:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        abort(400, description=f"{name} must be an ISO date")


def _owned_or_404(model, object_id: int):
    obj = get_db().get(model, object_id)
    if obj is None or not current_access().can_access(obj.promoterID):
        abort(404)
    return obj


def _document_service() -> DocumentService:
    return DocumentService(
        get_db(),
        upload_dir=current_app.config.get("DOCUMENT_UPLOAD_DIR"),
        allowed_extensions=current_app.config.get("DOCUMENT_ALLOWED_EXTENSIONS"),
    )


# ---------------------------------------------------------------------------
# Dashboard, orders & customers
# ---------------------------------------------------------------------------

@admin_bp.route("/dashboard", methods=["GET"])
def dashboard_stats():
    return jsonify(AdminService(get_db()).get_dashboard_stats(current_access()))


@admin_bp.route("/orders", methods=["GET"])
def list_orders():
    service = AdminService(get_db())
    filters = {key: request.args.get(key) for key in ("search", "status", "eventId", "startDate", "endDate")}
    try:
        orders = service.list_orders(current_access(), filters)
    except ValueError as exc:
        return error(str(exc))
    return jsonify({"orders": [serialize_order(order) for order in orders], "stats": service.get_order_stats(orders)})


@admin_bp.route("/orders/<identifier>", methods=["GET"])
def get_order(identifier: str):
    order = OrderService(get_db()).get_order(identifier)
    if order is None or not current_access().can_access(order.promoterID):
        return error("Order not found", 404)
    return jsonify({"order": serialize_order(order)})


@admin_bp.route("/customers", methods=["GET"])
def list_customers():
    return jsonify({"customers": AdminService(get_db()).get_customers(current_access())})


# ---------------------------------------------------------------------------
# Venues & events
# ---------------------------------------------------------------------------

@admin_bp.route("/venues", methods=["GET"])
def list_venues():
    venues = AdminService(get_db()).list_venues(current_access())
    return jsonify({"venues": [venue.to_dict() for venue in venues]})


@admin_bp.route("/venues", methods=["POST"])
def create_venue():
    ok, message, venue = AdminService(get_db()).save_venue(current_access(), json_body())
    return respond(ok, message, venue, "venue", created=True)


@admin_bp.route("/venues/<int:venue_id>", methods=["PUT"])
def update_venue(venue_id: int):
    ok, message, venue = AdminService(get_db()).save_venue(current_access(), json_body(), venue_id)
    return respond(ok, message, venue, "venue")


@admin_bp.route("/venues/<int:venue_id>", methods=["DELETE"])
def delete_venue(venue_id: int):
    return respond(*AdminService(get_db()).delete_venue(current_access(), venue_id))


@admin_bp.route("/events", methods=["GET"])
def list_events():
    service = AdminService(get_db())
    events = service.list_events(current_access())
    return jsonify(
        {"events": [{**event.to_dict(), "availability": service.get_availability(event)} for event in events]}
    )


@admin_bp.route("/events", methods=["POST"])
def create_event():
    ok, message, event = AdminService(get_db()).save_event(current_access(), json_body())
    return respond(ok, message, event, "event", created=True)


@admin_bp.route("/events/<int:event_id>", methods=["GET"])
def get_event(event_id: int):
    service = AdminService(get_db())
    event = service.get_event(event_id, current_access())
    if event is None:
        return error("Event not found", 404)
    return jsonify({"event": event.to_dict(), "availability": service.get_availability(event)})


@admin_bp.route("/events/<int:event_id>", methods=["PUT"])
def update_event(event_id: int):
    ok, message, event = AdminService(get_db()).save_event(current_access(), json_body(), event_id)
    return respond(ok, message, event, "event")


@admin_bp.route("/events/<int:event_id>", methods=["DELETE"])
def delete_event(event_id: int):
    return respond(*AdminService(get_db()).delete_event(current_access(), event_id))


# ---------------------------------------------------------------------------
# Promotions & refunds
# ---------------------------------------------------------------------------

@admin_bp.route("/promotions", methods=["GET"])
def list_promotions():
    promotions = PromotionService(get_db()).list_promotions(current_access())
    return jsonify({"promotions": [promotion.to_dict() for promotion in promotions]})


@admin_bp.route("/promotions", methods=["POST"])
def create_promotion():
    ok, message, promotion = PromotionService(get_db()).create_promotion(current_access(), json_body())
    return respond(ok, message, promotion, "promotion", created=True)


@admin_bp.route("/promotions/<int:promotion_id>", methods=["PUT"])
def update_promotion(promotion_id: int):
    ok, message, promotion = PromotionService(get_db()).update_promotion(promotion_id, current_access(), json_body())
    return respond(ok, message, promotion, "promotion")


@admin_bp.route("/promotions/<int:promotion_id>", methods=["DELETE"])
def delete_promotion(promotion_id: int):
    return respond(*PromotionService(get_db()).delete_promotion(promotion_id, current_access()))


@admin_bp.route("/refunds", methods=["GET"])
def list_refunds():
    refunds = RefundService(get_db()).list_refunds(current_access(), int_arg("orderId"))
    return jsonify({"refunds": [refund.to_dict() for refund in refunds]})


@admin_bp.route("/orders/<identifier>/refund", methods=["POST"])
def refund_order(identifier: str):
    data = json_body()
    amount: Any = data.get("amount")
    if amount is not None:
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            return error("amount must be a number")
        if not math.isfinite(amount):
            return error("amount must be a number")
    ok, message, refund = RefundService(get_db()).process_refund(identifier, amount, data.get("reason"), current_access())
    if not ok and refund is not None:
        # The gateway declined; the failed refund row is still returned.
        return jsonify({"error": message, "refund": refund.to_dict()}), 502
    return respond(ok, message, refund, "refund", created=True)


# ---------------------------------------------------------------------------
# Promoters (platform admins)
# ---------------------------------------------------------------------------

@admin_bp.route("/promoters", methods=["GET"])
@admin_required
def list_promoters():
    promoters = PromoterService(get_db()).list_promoters()
    return jsonify({"promoters": [promoter.to_dict() for promoter in promoters]})


@admin_bp.route("/promoters", methods=["POST"])
@admin_required
def create_promoter():
    ok, message, promoter = PromoterService(get_db()).create_promoter(json_body())
    return respond(ok, message, promoter, "promoter", created=True)


@admin_bp.route("/promoters/<int:promoter_id>", methods=["GET"])
def get_promoter(promoter_id: int):
    if not current_access().can_access(promoter_id):
        return error("Promoter not found", 404)
    service = PromoterService(get_db())
    promoter = service.get_promoter(promoter_id)
    if promoter is None:
        return error("Promoter not found", 404)
    return jsonify({"promoter": promoter.to_dict(), "stats": service.get_stats(promoter_id)})


@admin_bp.route("/promoters/<int:promoter_id>", methods=["PUT"])
@admin_required
def update_promoter(promoter_id: int):
    ok, message, promoter = PromoterService(get_db()).update_promoter(promoter_id, json_body())
    return respond(ok, message, promoter, "promoter")


@admin_bp.route("/promoters/<int:promoter_id>", methods=["DELETE"])
@admin_required
def deactivate_promoter(promoter_id: int):
    ok, message, promoter = PromoterService(get_db()).deactivate_promoter(promoter_id)
    return respond(ok, message, promoter, "promoter")


@admin_bp.route("/promoters/<int:promoter_id>/stats", methods=["GET"])
def promoter_stats(promoter_id: int):
    if not current_access().can_access(promoter_id):
        return error("Promoter not found", 404)
    stats = PromoterService(get_db()).get_stats(promoter_id)
    if not stats:
        return error("Promoter not found", 404)
    return jsonify(stats)


@admin_bp.route("/promoters/<int:promoter_id>/gateway", methods=["GET"])
@admin_required
def get_gateway(promoter_id: int):
    gateway = PromoterService(get_db()).get_payment_gateway(promoter_id)
    return jsonify({"gateway": gateway.to_dict() if gateway is not None else None})


@admin_bp.route("/promoters/<int:promoter_id>/gateway", methods=["PUT"])
@admin_required
def set_gateway(promoter_id: int):
    ok, message, gateway = PromoterService(get_db()).set_payment_gateway(promoter_id, json_body())
    return respond(ok, message, gateway, "gateway")


@admin_bp.route("/promoters/<int:promoter_id>/commission-payouts", methods=["POST"])
@admin_required
def record_payout(promoter_id: int):
    try:
        amount = float(json_body().get("amount"))
    except (TypeError, ValueError):
        return error("amount must be a number")
    service = PromoterService(get_db())
    ok, message, _promoter = service.record_commission_payout(promoter_id, amount)
    if not ok:
        return respond(ok, message)
    return jsonify({"success": True, "message": message, "stats": service.get_stats(promoter_id)})


@admin_bp.route("/promoters/<int:promoter_id>/theme", methods=["PUT"])
@admin_required
def assign_theme(promoter_id: int):
    data = json_body()
    ok, message, promoter = BrandingService(get_db()).assign_theme(
        promoter_id, data.get("themeId"), data.get("kind") or "custom"
    )
    return respond(ok, message, promoter, "promoter")


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@admin_bp.route("/documents", methods=["GET"])
def list_documents():
    access = current_access()
    promoter_id = None if access.show_all else access.promoter_id
    try:
        documents = _document_service().list_documents(promoter_id, request.args.get("status"))
    except ValueError as exc:
        return error(str(exc))
    return jsonify({"documents": [document.to_dict() for document in documents]})


@admin_bp.route("/documents", methods=["POST"])
def upload_document():
    promoter_id = require_promoter()
    user = current_user()
    ok, message, document = _document_service().upload(
        promoter_id, request.files.get("file"), request.form.get("documentType"), user.userID
    )
    return respond(ok, message, document, "document", created=True)


@admin_bp.route("/documents/<int:document_id>/download", methods=["GET"])
def download_document(document_id: int):
    service = _document_service()
    document = service.get_document(document_id)
    if document is None or not current_access().can_access(document.promoterID):
        return error("Document not found", 404)
    path = service.file_path(document)
    if not path.exists():
        return error("Document file missing", 404)
    return send_file(path, as_attachment=True, download_name=document.original_filename)


@admin_bp.route("/documents/<int:document_id>/review", methods=["POST"])
@admin_required
def review_document(document_id: int):
    data = json_body()
    ok, message, document = _document_service().review(document_id, bool(data.get("approved")), data.get("notes"))
    return respond(ok, message, document, "document")


@admin_bp.route("/documents/<int:document_id>", methods=["DELETE"])
def delete_document(document_id: int):
    service = _document_service()
    document = service.get_document(document_id)
    if document is None or not current_access().can_access(document.promoterID):
        return error("Document not found", 404)
    return respond(*service.delete(document_id))


# ---------------------------------------------------------------------------
# Themes
# ---------------------------------------------------------------------------

@admin_bp.route("/themes", methods=["GET"])
def list_themes():
    access = current_access()
    themes = BrandingService(get_db()).list_themes(None if access.show_all else access.promoter_id)
    return jsonify({"themes": [theme.to_dict() for theme in themes]})


@admin_bp.route("/themes", methods=["POST"])
def create_theme():
    data = json_body()
    promoter_id = current_access().owning_promoter(data.get("promoterId"))
    ok, message, theme = BrandingService(get_db()).create_theme(promoter_id, data)
    return respond(ok, message, theme, "theme", created=True)


@admin_bp.route("/themes/<int:theme_id>", methods=["PUT"])
def update_theme(theme_id: int):
    _owned_or_404(Theme, theme_id)
    ok, message, theme = BrandingService(get_db()).update_theme(theme_id, json_body())
    return respond(ok, message, theme, "theme")


@admin_bp.route("/themes/<int:theme_id>", methods=["DELETE"])
def delete_theme(theme_id: int):
    _owned_or_404(Theme, theme_id)
    return respond(*BrandingService(get_db()).delete_theme(theme_id))


@admin_bp.route("/themes/cache/clear", methods=["POST"])
@admin_required
def clear_themes():
    clear_theme_cache(json_body().get("promoterId"))
    return jsonify({"success": True})


# ---------------------------------------------------------------------------
# KPIs, alerts & goals
# ---------------------------------------------------------------------------

@admin_bp.route("/kpis", methods=["GET"])
def kpis():
    promoter_id = require_promoter()
    try:
        result = DashboardService(get_db()).calculate_kpis(
            promoter_id,
            request.args.get("period", "monthly"),
            start=_parse_datetime_arg("start"),
            end=_parse_datetime_arg("end"),
        )
    except ValueError as exc:
        return error(str(exc))
    return jsonify(result)


@admin_bp.route("/summary", methods=["GET"])
def dashboard_summary():
    promoter_id = require_promoter()
    try:
        result = DashboardService(get_db()).get_summary(
            promoter_id, request.args.get("period", "monthly"), request.args.get("quarter")
        )
    except ValueError as exc:
        return error(str(exc))
    return jsonify(result)


@admin_bp.route("/alert-rules", methods=["GET"])
def list_alert_rules():
    rules = DashboardService(get_db()).list_alert_rules(require_promoter())
    return jsonify({"rules": [rule.to_dict() for rule in rules]})


@admin_bp.route("/alert-rules", methods=["POST"])
def create_alert_rule():
    ok, message, rule = DashboardService(get_db()).create_alert_rule(require_promoter(), json_body())
    return respond(ok, message, rule, "rule", created=True)


@admin_bp.route("/alert-rules/<int:rule_id>", methods=["PATCH"])
def toggle_alert_rule(rule_id: int):
    promoter_id = require_promoter()
    service = DashboardService(get_db())
    if rule_id not in {rule.alertRuleID for rule in service.list_alert_rules(promoter_id)}:
        return error("Alert rule not found", 404)
    ok, message, rule = service.set_rule_enabled(rule_id, bool(json_body().get("enabled")))
    return respond(ok, message, rule, "rule")


@admin_bp.route("/alert-rules/<int:rule_id>", methods=["DELETE"])
def delete_alert_rule(rule_id: int):
    promoter_id = require_promoter()
    service = DashboardService(get_db())
    if rule_id not in {rule.alertRuleID for rule in service.list_alert_rules(promoter_id)}:
        return error("Alert rule not found", 404)
    return respond(*service.delete_alert_rule(rule_id))


@admin_bp.route("/alerts", methods=["GET"])
def list_alerts():
    statuses = [status for status in (request.args.get("status") or "").split(",") if status]
    try:
        alerts = DashboardService(get_db()).list_alerts(require_promoter(), statuses or None)
    except ValueError as exc:
        return error(str(exc))
    return jsonify({"alerts": [alert.to_dict() for alert in alerts]})


@admin_bp.route("/alerts/check", methods=["POST"])
def check_alerts():
    triggered = DashboardService(get_db()).check_alerts(require_promoter())
    return jsonify({"triggered": [alert.to_dict() for alert in triggered]})


@admin_bp.route("/alerts/<int:alert_id>/acknowledge", methods=["POST"])
def acknowledge_alert(alert_id: int):
    _owned_or_404(DashboardAlert, alert_id)
    ok, message, alert = DashboardService(get_db()).acknowledge_alert(alert_id, current_user().userID)
    return respond(ok, message, alert, "alert")


@admin_bp.route("/alerts/<int:alert_id>/resolve", methods=["POST"])
def resolve_alert(alert_id: int):
    _owned_or_404(DashboardAlert, alert_id)
    ok, message, alert = DashboardService(get_db()).resolve_alert(alert_id)
    return respond(ok, message, alert, "alert")


@admin_bp.route("/goals", methods=["GET"])
def list_goals():
    goals = DashboardService(get_db()).list_goals(require_promoter())
    return jsonify({"goals": [goal.to_dict() for goal in goals]})


@admin_bp.route("/goals", methods=["POST"])
def create_goal():
    ok, message, goal = DashboardService(get_db()).create_goal(require_promoter(), json_body())
    return respond(ok, message, goal, "goal", created=True)


@admin_bp.route("/goals/<int:goal_id>/progress", methods=["PUT"])
def update_goal_progress(goal_id: int):
    _owned_or_404(PromoterGoal, goal_id)
    try:
        value = float(json_body().get("current"))
    except (TypeError, ValueError):
        return error("current must be a number")
    goal = DashboardService(get_db()).update_goal_progress(goal_id, value)
    return jsonify({"goal": goal.to_dict()})


# ---------------------------------------------------------------------------
# Segmentation
# ---------------------------------------------------------------------------

@admin_bp.route("/segments", methods=["GET"])
def segments():
    return jsonify({"segments": SegmentationService(get_db()).get_segments(current_access())})


@admin_bp.route("/insights", methods=["GET"])
def insights():
    return jsonify({"insights": SegmentationService(get_db()).get_insights(current_access())})


@admin_bp.route("/customers/<email>/profile", methods=["GET"])
def customer_profile(email: str):
    profile = SegmentationService(get_db()).get_customer_profile(current_access(), email)
    if profile is None:
        return error("Customer not found", 404)
    return jsonify({"profile": profile.to_dict()})


@admin_bp.route("/customers/<email>/similar", methods=["GET"])
def similar_customers(email: str):
    similar = SegmentationService(get_db()).get_similar_customers(current_access(), email, int_arg("limit", 5))
    return jsonify({"customers": [profile.to_dict() for profile in similar]})


# ---------------------------------------------------------------------------
# Imports
# ---------------------------------------------------------------------------

@admin_bp.route("/affiliate/import", methods=["POST"])
def import_affiliate_events():
    ok, message, events = AffiliateImportService(get_db()).import_ticketmaster_events(require_promoter(), json_body())
    if not ok:
        return error(message, 502)
    return jsonify({"success": True, "message": message, "events": [event.to_dict() for event in events]})


@admin_bp.route("/affiliate/events", methods=["GET"])
def list_affiliate_events():
    events = AffiliateImportService(get_db()).list_events(require_promoter())
    return jsonify({"events": [event.to_dict() for event in events]})


@admin_bp.route("/import/legacy", methods=["POST"])
@admin_required
def import_legacy():
    data = json_body()
    promoter_id = current_access().owning_promoter(data.get("promoterId"))
    service = LegacyImportService(get_db())
    events = service.import_events(data.get("events") or [], promoter_id)
    orders = service.import_orders(data.get("orders") or [], promoter_id, events["eventMap"])
    return jsonify({"events": events, "orders": orders})


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

@admin_bp.route("/notifications", methods=["GET"])
def list_notifications():
    user_id = current_user().userID
    service = NotificationService()
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    return jsonify(
        {
            "notifications": service.get_notifications(user_id, unread_only=unread_only, limit=int_arg("limit", 20)),
            "unread_count": service.get_unread_count(user_id),
        }
    )


@admin_bp.route("/notifications/<notification_id>/read", methods=["POST"])
def mark_notification_read(notification_id: str):
    if not NotificationService().mark_as_read(current_user().userID, notification_id):
        return error("Notification not found", 404)
    return jsonify({"success": True})


@admin_bp.route("/notifications/mark-all-read", methods=["POST"])
def mark_all_notifications_read():
    return jsonify({"success": True, "marked": NotificationService().mark_all_as_read(current_user().userID)})
