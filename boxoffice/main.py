# boxoffice/main.py
"""Flask application: JSON blueprints behind the tenant subdomain rewrite."""
import logging
import time

from flask import Flask, abort, g, jsonify, request, session
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from boxoffice.blueprints import ALL_BLUEPRINTS
from boxoffice.config import Config
from boxoffice.database import Base, close_db, engine, get_db
from boxoffice.middleware import SubdomainRewriteMiddleware
from boxoffice.models import User
from boxoffice.observability import (
    check_database_health,
    check_integrations_health,
    configure_logging,
    ensure_request_id,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
)
from boxoffice.observability.logging_config import TENANT_ENVIRON_KEY

logger = logging.getLogger(__name__)


def create_app() -> Flask:
    flask_app = Flask(__name__)
    Config.configure_app(flask_app)
    configure_logging(flask_app)
    for blueprint in ALL_BLUEPRINTS:
        flask_app.register_blueprint(blueprint)
    flask_app.wsgi_app = SubdomainRewriteMiddleware(flask_app.wsgi_app, Config.ROOT_DOMAIN)

    flask_app.before_request(_load_request_context)
    flask_app.after_request(_record_response)
    flask_app.teardown_appcontext(close_db)
    flask_app.register_error_handler(HTTPException, _http_error)
    flask_app.register_error_handler(SQLAlchemyError, _database_error)
    flask_app.add_url_rule("/health", "health", health, methods=["GET"])
    flask_app.add_url_rule("/admin/metrics", "admin_metrics", admin_metrics, methods=["GET"])
    return flask_app


def init_database():
    """Create any missing tables."""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
    except SQLAlchemyError as e:
        logger.exception("Error initializing database: %s", e)


def _endpoint_label() -> str:
    return request.endpoint or request.path


def _load_request_context():
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    g.tenant_slug = request.environ.get(TENANT_ENVIRON_KEY)
    g.current_user = None
    user_id = session.get("user_id")
    if user_id is not None:
        g.current_user = get_db().get(User, user_id)
        if g.current_user is None:
            session.pop("user_id", None)
    increment_counter("http_requests_total", labels={"method": request.method, "endpoint": _endpoint_label()})


def _record_response(response):
    labels = {"method": request.method, "endpoint": _endpoint_label(), "status": str(response.status_code)}
    started = getattr(g, "request_started_at", None)
    if started is not None:
        observe_latency("http_request_latency_ms", (time.perf_counter() - started) * 1000, labels=labels)
    response.headers.setdefault(Config.REQUEST_ID_HEADER, getattr(g, "request_id", "") or "")
    if response.status_code >= 500:
        increment_counter("http_errors_total", labels=labels)
        logger.error("Request finished with error status %s", response.status_code)
    else:
        logger.info("Request finished", extra={"status_code": response.status_code})
    return response


def _http_error(exc: HTTPException):
    return jsonify({"error": exc.description or exc.name}), exc.code


def _database_error(exc: SQLAlchemyError):
    db = g.get("db")
    if db is not None:
        db.rollback()
    logger.exception("Database error while handling request")
    return jsonify({"error": "Database error"}), 500


def health():
    database = check_database_health()
    up = database.get("status") == "UP"
    body = {
        "status": "UP" if up else "DEGRADED",
        "components": {"database": database, "integrations": check_integrations_health()},
    }
    return jsonify(body), 200 if up else 503


def admin_metrics():
    user = getattr(g, "current_user", None)
    if user is None or not user.is_admin:
        abort(403)
    return jsonify(get_metrics_snapshot())


app = create_app()
init_database()
