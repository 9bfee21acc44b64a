"""
Structured JSON logging.

Every record emitted inside a request is stamped with the request id, the
signed-in user, the promoter that user works for and the storefront tenant the
subdomain middleware resolved, so one checkout can be followed across services.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from flask import Flask, g, has_request_context, request, session

from boxoffice.config import Config

# WSGI environ key the subdomain middleware stores the tenant slug under.
TENANT_ENVIRON_KEY = "boxoffice.tenant_slug"

CONTEXT_FIELDS = ("request_id", "method", "path", "user_id", "promoter_id", "tenant")


def _request_context() -> Dict[str, Optional[Any]]:
    if not has_request_context():
        return dict.fromkeys(CONTEXT_FIELDS)
    user = getattr(g, "current_user", None)
    return {
        "request_id": getattr(g, "request_id", None),
        "method": request.method,
        "path": request.path,
        "user_id": session.get("user_id"),
        "promoter_id": getattr(user, "promoterID", None),
        "tenant": request.environ.get(TENANT_ENVIRON_KEY),
    }


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        for key, value in _request_context().items():
            setattr(record, key, value)
        return True


class JsonFormatter(logging.Formatter):
    # Anything passed through ``extra=`` lands in the payload as-is.
    _STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"} | set(CONTEXT_FIELDS)

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update({key: getattr(record, key, None) for key in CONTEXT_FIELDS})
        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in self._STANDARD_ATTRS and not key.startswith("_")
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(app: Flask) -> None:
    """Route every logger through one JSON stdout handler unless disabled."""
    if not Config.STRUCTURED_LOGS_ENABLED:
        app.logger.setLevel(Config.LOG_LEVEL)
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestContextFilter())

    root = logging.getLogger()
    root.setLevel(Config.LOG_LEVEL)
    # Replacing rather than appending keeps the dev reloader from doubling lines.
    root.handlers = [handler]
    app.logger.handlers = [handler]
    for noisy in ("stripe", "urllib3"):
        logging.getLogger(noisy).setLevel(max(logging.WARNING, root.level))


def ensure_request_id() -> str:
    """Reuse the caller's request id header when present."""
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get(Config.REQUEST_ID_HEADER) or uuid4().hex
    return g.request_id
