from __future__ import annotations

import logging

from flask import Blueprint, jsonify, session
from werkzeug.security import check_password_hash, generate_password_hash

from boxoffice.blueprints.guards import current_user, error, json_body
from boxoffice.config import Config
from boxoffice.database import get_db
from boxoffice.models import Promoter, User, UserRole
from boxoffice.observability import increment_counter

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")
logger = logging.getLogger(__name__)

_PRIVILEGED_ROLES = {UserRole.ADMIN.value, UserRole.SUPERADMIN.value}


@auth_bp.route("/register", methods=["POST"])
def register():
    data = json_body()
    username = (data.get("username") or "").strip()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    role = (data.get("role") or UserRole.CUSTOMER.value).lower()

    if not username or not email or not password:
        return error("Username, email and password are required")
    if role not in {r.value for r in UserRole}:
        return error(f"Unknown role: {role}")

    db = get_db()
    if db.query(User).filter_by(username=username).first():
        return error("Username already exists.", 409)
    if db.query(User).filter_by(email=email).first():
        return error("Email already registered.", 409)
    if role in _PRIVILEGED_ROLES and data.get("superAdminToken") != Config.SUPER_ADMIN_TOKEN:
        return error("Invalid super admin token.", 403)

    try:
        promoter_id = int(data["promoterId"]) if data.get("promoterId") is not None else None
    except (TypeError, ValueError):
        return error("promoterId must be a number")
    if role == UserRole.PROMOTER.value and (promoter_id is None or db.get(Promoter, promoter_id) is None):
        return error("Promoter accounts need an existing promoterId")

    user = User(
        username=username,
        email=email,
        passwordHash=generate_password_hash(password),
        role=role,
        promoterID=promoter_id,
        can_access_all_tenants=role == UserRole.SUPERADMIN.value,
    )
    db.add(user)
    db.commit()
    logger.info("User registered", extra={"user_id": user.userID, "role": role})
    return jsonify({"user": user.to_dict()}), 201


@auth_bp.route("/login", methods=["POST"])
def login():
    data = json_body()
    db = get_db()
    user = db.query(User).filter_by(username=(data.get("username") or "").strip()).first()
    if user and check_password_hash(user.passwordHash, data.get("password") or ""):
        session["user_id"] = user.userID
        increment_counter("logins_total", labels={"result": "success"})
        return jsonify({"user": user.to_dict()})
    increment_counter("logins_total", labels={"result": "failure"})
    return error("Invalid username or password.", 401)


@auth_bp.route("/logout", methods=["POST"])
def logout():
    session.clear()
    return jsonify({"success": True})


@auth_bp.route("/me", methods=["GET"])
def me():
    user = current_user()
    if user is None:
        return error("Not authenticated", 401)
    return jsonify({"user": user.to_dict()})
