from __future__ import annotations

import logging
from typing import Optional

import stripe
from flask import Blueprint, jsonify, request

from boxoffice.blueprints.guards import error
from boxoffice.database import get_db
from boxoffice.observability import increment_counter
from boxoffice.services.webhook_service import (
    StripeEventHandler,
    WebhookSecretMissingError,
    construct_event,
    resolve_webhook_secret,
)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")
logger = logging.getLogger(__name__)


def _receive(promoter_slug: Optional[str] = None):
    db = get_db()
    try:
        secret = resolve_webhook_secret(db, promoter_slug)
    except WebhookSecretMissingError as exc:
        logger.error("Stripe webhook rejected: no signing secret", extra={"promoter_slug": promoter_slug})
        return error(str(exc), 500)

    payload = request.get_data()
    signature = request.headers.get("Stripe-Signature", "")
    try:
        event = construct_event(payload, signature, secret)
    except ValueError:
        increment_counter("stripe_webhook_rejected_total", labels={"reason": "payload"})
        return error("Invalid payload", 400)
    except stripe.SignatureVerificationError:
        increment_counter("stripe_webhook_rejected_total", labels={"reason": "signature"})
        logger.warning("Stripe webhook signature mismatch", extra={"promoter_slug": promoter_slug})
        return error("Invalid signature", 400)

    StripeEventHandler(db, event).handle()
    return jsonify({"received": True})


@webhooks_bp.route("/stripe", methods=["POST"])
def stripe_webhook():
    return _receive()


@webhooks_bp.route("/stripe/<slug>", methods=["POST"])
def promoter_stripe_webhook(slug: str):
    return _receive(slug)
