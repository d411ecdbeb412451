"""Checkout blueprint — /api/checkout, /api/billing/*

JSON endpoints called by the web app's pricing, signup and settings pages.

Routes:
- POST /api/checkout          — create Checkout Session (new signup or logged-in parent)
- POST /api/checkout/verify   — confirm a finished checkout for the success page
- POST /api/billing/portal    — create Customer Portal Session for a logged-in parent
"""

import logging

import stripe
from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from myceo.errors import AccountNotFoundError, BillingError
from myceo.extensions import limiter
from myceo.models.parent import Parent
from myceo.services.stripe_service import (
    clean_signup,
    create_checkout_session,
    create_portal_session,
    validate_plan,
    verify_checkout_session,
)

logger = logging.getLogger(__name__)

checkout_bp = Blueprint("checkout", __name__, url_prefix="/api")


def _error(message, status):
    return jsonify({"error": message}), status


def _current_parent():
    parent = Parent.query.filter_by(user_id=current_user.id).first()
    if parent is None:
        raise AccountNotFoundError("Parent record not found")
    return parent


# ──────────────────────────────────────────────
# POST /api/checkout
# ──────────────────────────────────────────────

@checkout_bp.route("/checkout", methods=["POST"])
@limiter.limit("10 per minute")
def checkout():
    """Create a Stripe Checkout Session and return its URL.

    Body: {plan, billingPeriod, successUrl?, cancelUrl?, userData?}

    With userData this is a new signup: nothing is stored locally, the
    account is created by the webhook once Stripe confirms payment.
    Without it the caller must be logged in as a parent.
    """
    body = request.get_json(silent=True) or {}
    plan = body.get("plan")
    billing_period = body.get("billingPeriod") or "monthly"
    user_data = body.get("userData")

    try:
        validate_plan(plan, billing_period)

        if user_data:
            signup = clean_signup(user_data)
            parent = None
        else:
            if not current_user.is_authenticated:
                return _error("Unauthorized", 401)
            signup = None
            parent = _current_parent()

        session = create_checkout_session(
            plan=plan,
            billing_period=billing_period,
            success_url=body.get("successUrl"),
            cancel_url=body.get("cancelUrl"),
            signup=signup,
            parent=parent,
            user=None if signup else current_user,
        )
    except BillingError as e:
        return _error(str(e), e.status_code)
    except stripe.StripeError as e:
        logger.error(f"Checkout error: {e}", exc_info=True)
        return _error("Could not start checkout. Please try again.", 502)

    return jsonify({"sessionId": session.id, "url": session.url}), 200


# ──────────────────────────────────────────────
# POST /api/checkout/verify
# ──────────────────────────────────────────────

@checkout_bp.route("/checkout/verify", methods=["POST"])
def verify_checkout():
    """Confirm a checkout session was paid.

    Polled by the signup-success page; the account itself is created by
    the webhook, not here.
    """
    body = request.get_json(silent=True)
    if body is None:
        return _error("Invalid request body", 400)

    try:
        result = verify_checkout_session(body.get("sessionId"))
    except BillingError as e:
        return _error(str(e), e.status_code)
    except stripe.StripeError as e:
        logger.error(f"Error verifying checkout session: {e}", exc_info=True)
        return _error("Failed to verify checkout session", 502)

    return jsonify(result), 200


# ──────────────────────────────────────────────
# POST /api/billing/portal
# ──────────────────────────────────────────────

@checkout_bp.route("/billing/portal", methods=["POST"])
@login_required
def customer_portal():
    """Create a Stripe Customer Portal Session for the logged-in parent.

    Only works once the parent has a Stripe customer (checked out at
    least once).
    """
    body = request.get_json(silent=True) or {}

    try:
        url = create_portal_session(_current_parent(), return_url=body.get("returnUrl"))
    except BillingError as e:
        return _error(str(e), e.status_code)
    except stripe.StripeError as e:
        logger.error(f"Portal session error: {e}", exc_info=True)
        return _error("Could not open billing portal. Please try again.", 502)

    return jsonify({"url": url}), 200
