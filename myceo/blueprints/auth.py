"""Auth blueprint — /auth/*

JSON session login for parents whose account was provisioned by the
checkout webhook. There is no registration route: accounts only come
into existence after a completed checkout.
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf
from werkzeug.security import check_password_hash

from myceo.extensions import limiter
from myceo.models.parent import Parent
from myceo.models.user import User, normalize_email

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _serialize_account(user):
    parent = Parent.query.filter_by(user_id=user.id).first()
    account = {
        "id": user.id,
        "email": user.email,
        "fullName": user.full_name,
        "emailVerified": user.is_email_verified,
        "parent": None,
    }
    if parent:
        account["parent"] = {
            "id": parent.id,
            "subscriptionTier": parent.subscription_tier,
            "subscriptionStatus": parent.subscription_status,
            "trialEndsAt": (
                parent.trial_ends_at.isoformat() if parent.trial_ends_at else None
            ),
            "hasAccess": parent.has_access,
        }
    return account


# ──────────────────────────────────────────────
# GET /auth/csrf-token
# ──────────────────────────────────────────────

@auth_bp.route("/csrf-token", methods=["GET"])
def csrf_token():
    """CSRF token for the SPA to send back in X-CSRFToken."""
    return jsonify({"csrfToken": generate_csrf()}), 200


# ──────────────────────────────────────────────
# POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("15 per minute")
def login():
    """Email + password login. Body: {email, password, remember?}"""
    body = request.get_json(silent=True) or {}
    email = normalize_email(body.get("email"))
    password = body.get("password") or ""

    if not email or not password:
        return jsonify({"error": "Email and password are required."}), 400

    user = User.query.filter_by(email=email).first()

    if user is None or not check_password_hash(user.password_hash, password):
        return jsonify({"error": "Invalid email or password."}), 401

    if not user.is_active:
        return jsonify({"error": "Your account has been deactivated."}), 403

    login_user(user, remember=bool(body.get("remember")))
    logger.info(f"User {user.id} logged in")
    return jsonify(_serialize_account(user)), 200


# ──────────────────────────────────────────────
# POST /auth/logout
# ──────────────────────────────────────────────

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"success": True}), 200


# ──────────────────────────────────────────────
# GET /auth/me
# ──────────────────────────────────────────────

@auth_bp.route("/me", methods=["GET"])
@login_required
def me():
    """Current user plus the subscription state the product gates on."""
    return jsonify(_serialize_account(current_user)), 200
