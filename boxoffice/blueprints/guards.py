"""Request helpers shared by the JSON blueprints."""
from __future__ import annotations

from functools import wraps
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from flask import abort, g, jsonify, request, session

from boxoffice.services.access import PromoterAccess


def current_user():
    return getattr(g, "current_user", None)


def json_body() -> Dict[str, Any]:
    return request.get_json(silent=True) or {}


def error(message: str, status: int = 400, **extra: Any):
    return jsonify({"error": message, **extra}), status


def login_required(view: Callable) -> Callable:
    @wraps(view)
    def wrapped(*args, **kwargs):
        user = current_user()
        if user is None:
            return error("Not authenticated", 401)
        if not (user.is_admin or user.is_promoter):
            return error("Forbidden", 403)
        return view(*args, **kwargs)

    return wrapped


def admin_required(view: Callable) -> Callable:
    @wraps(view)
    def wrapped(*args, **kwargs):
        user = current_user()
        if user is None:
            return error("Not authenticated", 401)
        if not user.is_admin:
            return error("Forbidden", 403)
        return view(*args, **kwargs)

    return wrapped


def current_access() -> PromoterAccess:
    return PromoterAccess.for_user(current_user(), request.args.get("promoter"))


def scoped_promoter_id() -> Optional[int]:
    """Promoter a single-tenant screen works on; admins must pick one."""
    access = current_access()
    if access.show_all:
        return None
    return access.promoter_id


def cart_key() -> str:
    if "cart_key" not in session:
        session["cart_key"] = uuid4().hex
    return session["cart_key"]


def client_ip() -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For", "")
    return forwarded.split(",")[0].strip() or request.remote_addr


def respond(ok: bool, message: str, obj: Any = None, key: Optional[str] = None, created: bool = False):
    """Turn a service ``(success, message, obj)`` tuple into a JSON response."""
    if not ok:
        return error(message, 404 if "not found" in message.lower() else 400)
    body: Dict[str, Any] = {"success": True, "message": message}
    if key is not None and obj is not None:
        body[key] = obj.to_dict() if hasattr(obj, "to_dict") else obj
    return jsonify(body), 201 if created else 200


def require_promoter() -> int:
    """Promoter id for single-tenant screens; admins pass ``?promoter=<id>``."""
    promoter_id = scoped_promoter_id()
    if promoter_id is None:
        abort(400, description="Select a promoter with ?promoter=<id>")
    return promoter_id


def int_arg(name: str, default: Optional[int] = None) -> Optional[int]:
    value = request.args.get(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        abort(400, description=f"{name} must be a number")
