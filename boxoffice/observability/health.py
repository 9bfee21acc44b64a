from __future__ import annotations

from typing import Dict

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from boxoffice.config import Config
from boxoffice.database import engine


def check_database_health() -> Dict[str, str]:
    """Run a trivial query to prove the database answers."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"status": "UP"}
    except OperationalError as exc:
        return {"status": "DOWN", "detail": str(exc)}


def check_integrations_health() -> Dict[str, str]:
    """Which outbound integrations have credentials; missing ones degrade features, not the app."""
    return {
        "stripeWebhookSecret": "CONFIGURED" if Config.STRIPE_WEBHOOK_SECRET else "MISSING",
        "email": "CONFIGURED" if Config.EMAIL_API_KEY else "LOG_ONLY",
        "ticketmaster": "CONFIGURED" if Config.TICKETMASTER_API_KEY else "MISSING",
    }
