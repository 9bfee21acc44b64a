from __future__ import annotations

import base64
import csv
import io
import logging
from datetime import datetime
from urllib.parse import urlparse

from flask import Blueprint, Response, jsonify, redirect, request

from boxoffice.blueprints.guards import (
    current_access,
    error,
    json_body,
    login_required,
    require_promoter,
    respond,
)
from boxoffice.database import ensure_utc, get_db
from boxoffice.services.campaign_service import CampaignService
from boxoffice.services.experiment_service import ExperimentError, ExperimentService

marketing_bp = Blueprint("marketing", __name__, url_prefix="/marketing")
logger = logging.getLogger(__name__)

TRACKING_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")


def _campaign_or_404(service: CampaignService, campaign_id: int):
    campaign = service.get_campaign(campaign_id)
    if campaign is None or not current_access().can_access(campaign.promoterID):
        return None
    return campaign


def _experiment_or_404(service: ExperimentService, experiment_id: int):
    experiment = service.get_experiment(experiment_id)
    if experiment is None or not current_access().can_access(experiment.promoterID):
        return None
    return experiment


def _promoter_filter():
    access = current_access()
    return None if access.show_all else access.promoter_id


# ---------------------------------------------------------------------------
# Subscribers
# ---------------------------------------------------------------------------

@marketing_bp.route("/subscribers", methods=["GET"])
@login_required
def list_subscribers():
    try:
        subscribers = CampaignService(get_db()).list_subscribers(require_promoter(), request.args.get("status"))
    except ValueError as exc:
        return error(str(exc))
    return jsonify({"subscribers": [subscriber.to_dict() for subscriber in subscribers]})


@marketing_bp.route("/subscribers", methods=["POST"])
@login_required
def add_subscriber():
    ok, message, subscriber = CampaignService(get_db()).add_subscriber(require_promoter(), json_body())
    return respond(ok, message, subscriber, "subscriber", created=True)


@marketing_bp.route("/subscribers/import", methods=["POST"])
@login_required
def import_subscribers():
    promoter_id = require_promoter()
    upload = request.files.get("file")
    if upload is not None:
        text = upload.read().decode("utf-8-sig")
        rows = list(csv.DictReader(io.StringIO(text)))
    else:
        rows = json_body().get("subscribers") or []
    summary = CampaignService(get_db()).import_subscribers(promoter_id, rows)
    return jsonify(summary)


@marketing_bp.route("/subscribers/unsubscribe", methods=["POST"])
@login_required
def unsubscribe_subscriber():
    ok, message, subscriber = CampaignService(get_db()).unsubscribe(require_promoter(), json_body().get("email"))
    return respond(ok, message, subscriber, "subscriber")


# ---------------------------------------------------------------------------
# Campaigns
# ---------------------------------------------------------------------------

@marketing_bp.route("/campaigns", methods=["GET"])
@login_required
def list_campaigns():
    campaigns = CampaignService(get_db()).list_campaigns(_promoter_filter())
    return jsonify({"campaigns": [campaign.to_dict() for campaign in campaigns]})


@marketing_bp.route("/campaigns", methods=["POST"])
@login_required
def create_campaign():
    ok, message, campaign = CampaignService(get_db()).create_campaign(require_promoter(), json_body())
    return respond(ok, message, campaign, "campaign", created=True)


@marketing_bp.route("/campaigns/<int:campaign_id>", methods=["GET"])
@login_required
def get_campaign(campaign_id: int):
    campaign = _campaign_or_404(CampaignService(get_db()), campaign_id)
    if campaign is None:
        return error("Campaign not found", 404)
    return jsonify({"campaign": campaign.to_dict()})


@marketing_bp.route("/campaigns/<int:campaign_id>", methods=["PUT"])
@login_required
def update_campaign(campaign_id: int):
    service = CampaignService(get_db())
    if _campaign_or_404(service, campaign_id) is None:
        return error("Campaign not found", 404)
    ok, message, campaign = service.update_campaign(campaign_id, json_body())
    return respond(ok, message, campaign, "campaign")


@marketing_bp.route("/campaigns/<int:campaign_id>", methods=["DELETE"])
@login_required
def delete_campaign(campaign_id: int):
    service = CampaignService(get_db())
    if _campaign_or_404(service, campaign_id) is None:
        return error("Campaign not found", 404)
    return respond(*service.delete_campaign(campaign_id))


@marketing_bp.route("/campaigns/<int:campaign_id>/schedule", methods=["POST"])
@login_required
def schedule_campaign(campaign_id: int):
    service = CampaignService(get_db())
    if _campaign_or_404(service, campaign_id) is None:
        return error("Campaign not found", 404)
    try:
        when = ensure_utc(datetime.fromisoformat(str(json_body().get("scheduledAt")).replace("Z", "+00:00")))
    except ValueError:
        return error("scheduledAt must be an ISO date")
    ok, message, campaign = service.schedule(campaign_id, when)
    return respond(ok, message, campaign, "campaign")


@marketing_bp.route("/campaigns/<int:campaign_id>/<action>", methods=["POST"])
@login_required
def campaign_action(campaign_id: int, action: str):
    service = CampaignService(get_db())
    if _campaign_or_404(service, campaign_id) is None:
        return error("Campaign not found", 404)
    handlers = {"send": service.send_now, "pause": service.pause, "cancel": service.cancel}
    if action not in handlers:
        return error(f"Unknown campaign action: {action}", 404)
    ok, message, campaign = handlers[action](campaign_id)
    return respond(ok, message, campaign, "campaign")


@marketing_bp.route("/campaigns/<int:campaign_id>/analytics", methods=["GET"])
@login_required
def campaign_analytics(campaign_id: int):
    service = CampaignService(get_db())
    if _campaign_or_404(service, campaign_id) is None:
        return error("Campaign not found", 404)
    return jsonify(service.get_campaign_analytics(campaign_id))


# ---------------------------------------------------------------------------
# Tracking (public, linked from sent e-mails)
# ---------------------------------------------------------------------------

@marketing_bp.route("/track/open/<int:send_id>.gif", methods=["GET"])
def track_open(send_id: int):
    CampaignService(get_db()).track_open(send_id)
    response = Response(TRACKING_PIXEL, mimetype="image/gif")
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    return response


@marketing_bp.route("/track/click/<int:send_id>", methods=["GET"])
def track_click(send_id: int):
    url = request.args.get("url", "")
    if urlparse(url).scheme not in ("http", "https"):
        return error("Invalid link", 400)
    CampaignService(get_db()).track_click(send_id, url)
    return redirect(url, code=302)


@marketing_bp.route("/unsubscribe/<int:send_id>", methods=["GET", "POST"])
def unsubscribe_link(send_id: int):
    ok, message, _subscriber = CampaignService(get_db()).unsubscribe_from_send(send_id)
    if not ok:
        return error(message, 404)
    return jsonify({"success": True, "message": "You have been unsubscribed."})


# ---------------------------------------------------------------------------
# Experiments
# ---------------------------------------------------------------------------

@marketing_bp.route("/experiments", methods=["GET"])
@login_required
def list_experiments():
    experiments = ExperimentService(get_db()).list_experiments(_promoter_filter())
    return jsonify({"experiments": [experiment.to_dict() for experiment in experiments]})


@marketing_bp.route("/experiments", methods=["POST"])
@login_required
def create_experiment():
    data = json_body()
    promoter_id = current_access().owning_promoter(data.get("promoterId"))
    ok, message, experiment = ExperimentService(get_db()).create_experiment(promoter_id, data)
    return respond(ok, message, experiment, "experiment", created=True)


@marketing_bp.route("/experiments/<int:experiment_id>", methods=["GET"])
@login_required
def get_experiment(experiment_id: int):
    experiment = _experiment_or_404(ExperimentService(get_db()), experiment_id)
    if experiment is None:
        return error("Experiment not found", 404)
    return jsonify({"experiment": experiment.to_dict()})


@marketing_bp.route("/experiments/<int:experiment_id>/<action>", methods=["POST"])
@login_required
def experiment_action(experiment_id: int, action: str):
    service = ExperimentService(get_db())
    if _experiment_or_404(service, experiment_id) is None:
        return error("Experiment not found", 404)
    handlers = {
        "start": service.start,
        "pause": service.pause,
        "complete": service.complete,
        "archive": service.archive,
    }
    if action not in handlers:
        return error(f"Unknown experiment action: {action}", 404)
    ok, message, experiment = handlers[action](experiment_id)
    return respond(ok, message, experiment, "experiment")


@marketing_bp.route("/experiments/<int:experiment_id>/assign", methods=["POST"])
def assign_variant(experiment_id: int):
    data = json_body()
    visitor_id = (data.get("visitorId") or "").strip()
    if not visitor_id:
        return error("visitorId is required")
    try:
        variant = ExperimentService(get_db()).assign_variant(experiment_id, visitor_id, data.get("attributes"))
    except ExperimentError as exc:
        status = 404 if "not found" in str(exc) else 409
        return jsonify({"assigned": False, "error": str(exc)}), status
    return jsonify({"assigned": True, "variant": {"id": variant.variantID, "name": variant.name, "config": variant.config or {}}})


@marketing_bp.route("/experiments/<int:experiment_id>/convert", methods=["POST"])
def record_conversion(experiment_id: int):
    data = json_body()
    try:
        revenue = float(data.get("revenue") or 0)
    except (TypeError, ValueError):
        return error("revenue must be a number")
    ok, message, _assignment = ExperimentService(get_db()).record_conversion(
        experiment_id, (data.get("visitorId") or "").strip(), revenue
    )
    if not ok:
        return error(message, 404)
    return jsonify({"success": True, "message": message})


@marketing_bp.route("/experiments/<int:experiment_id>/results", methods=["GET"])
def experiment_results(experiment_id: int):
    try:
        results = ExperimentService(get_db()).calculate_results(experiment_id)
    except ExperimentError as exc:
        return error(str(exc), 404)
    return jsonify(results)
