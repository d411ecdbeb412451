"""Stripe service — all Stripe API calls and webhook handling.

Responsible for:
- Creating Stripe Checkout Sessions (new signups and existing parents)
- Creating Stripe Customer Portal Sessions
- Verifying a completed checkout for the signup-success page
- Handling incoming webhooks with signature verification
- Dispatching to event-specific handlers

There is no processed-events table: every handler writes state derived
only from its own payload, so a redelivered event lands on the same end
state. Events that cannot be applied go to the dead-letter log.
"""

import logging
from datetime import datetime, timezone

import stripe
from flask import current_app

from myceo.errors import CheckoutValidationError, NoCustomerError
from myceo.extensions import db
from myceo.models.parent import Parent
from myceo.models.user import normalize_email
from myceo.services.billing_service import (
    UNCHANGED,
    map_subscription_status,
    reconcile,
    record_dead_letter,
)
from myceo.services.provisioning_service import (
    activate_existing_account,
    provision_new_signup,
    timestamp_to_datetime,
)
from myceo.services.signup_crypto import encrypt_signup_password

logger = logging.getLogger(__name__)


def _configure_stripe():
    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]


def _id_of(value):
    """Stripe references arrive as an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return value.get("id")


def _as_dict(obj):
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


# ──────────────────────────────────────────────
# Checkout & Portal Sessions
# ──────────────────────────────────────────────

def validate_plan(plan, billing_period):
    """Raise CheckoutValidationError unless plan and period are offered."""
    if not plan or plan not in Parent.TIERS:
        raise CheckoutValidationError("Invalid plan. Must be basic, standard, or premium")
    if billing_period not in Parent.BILLING_PERIODS:
        raise CheckoutValidationError("Invalid billing period. Must be monthly or annual")


def clean_signup(user_data):
    """Validate + normalize the signup payload of a new-signup checkout.

    Returns {"email", "password", "full_name"} with the email trimmed and
    lower-cased, since it becomes the identity's login later on.
    """
    user_data = user_data or {}
    email = normalize_email(user_data.get("email"))
    password = user_data.get("password") or ""
    full_name = (user_data.get("fullName") or "").strip()

    if not email or not password or not full_name:
        raise CheckoutValidationError("Missing required user data")

    return {"email": email, "password": password, "full_name": full_name}


def get_price_id(plan, billing_period, app_config):
    """Configured Stripe price ID for a plan tier + billing period."""
    return app_config.get(f"STRIPE_PRICE_{plan.upper()}_{billing_period.upper()}")


def checkout_metadata(plan, billing_period, signup=None, parent=None, user_id=None):
    """Metadata carried on both the checkout session and the subscription.

    Later webhook events only carry the subscription, so everything the
    provisioner needs must live on it too.
    """
    metadata = {"plan": plan, "billing_period": billing_period}
    if signup:
        metadata.update({
            "is_new_signup": "true",
            "signup_email": signup["email"],
            "signup_password": encrypt_signup_password(signup["password"]),
            "signup_full_name": signup["full_name"],
        })
    else:
        metadata.update({
            "is_new_signup": "false",
            "parent_id": parent.id if parent else "",
            "user_id": user_id or "",
        })
    return metadata


def _ensure_parent_customer(parent, email):
    """Return the parent's Stripe customer ID, creating + caching it if unset.

    The customer ID is written with a conditional UPDATE so two concurrent
    checkouts cannot bind the parent to two different customers.
    """
    if parent.stripe_customer_id:
        return parent.stripe_customer_id

    customer = stripe.Customer.create(
        email=normalize_email(email) or None,
        metadata={
            "user_id": parent.user_id,
            "parent_id": parent.id,
            "is_new_signup": "false",
        },
    )

    claimed = (
        Parent.query
        .filter(Parent.id == parent.id, Parent.stripe_customer_id.is_(None))
        .update({"stripe_customer_id": customer.id}, synchronize_session="fetch")
    )
    db.session.commit()

    if not claimed:
        db.session.refresh(parent)
        logger.info(
            f"Parent {parent.id} got customer {parent.stripe_customer_id} concurrently, "
            f"discarding {customer.id}"
        )
        return parent.stripe_customer_id

    logger.info(f"Created Stripe customer {customer.id} for parent {parent.id}")
    return customer.id


def create_checkout_session(plan, billing_period="monthly", success_url=None,
                            cancel_url=None, signup=None, parent=None, user=None):
    """Create a Stripe Checkout Session for a subscription.

    Exactly one of ``signup`` (cleaned new-signup payload) or ``parent``
    (+ ``user``, the logged-in caller) is given. New signups persist
    nothing locally; the account is created by the webhook after payment.

    Returns the Stripe checkout session (``.id`` / ``.url``).
    Raises CheckoutValidationError, stripe.StripeError.
    """
    validate_plan(plan, billing_period)

    app_config = current_app.config
    price_id = get_price_id(plan, billing_period, app_config)
    if not price_id:
        raise CheckoutValidationError(f"No price configured for {plan} ({billing_period})")

    _configure_stripe()
    site_url = app_config["SITE_URL"]

    if signup:
        customer = stripe.Customer.create(
            email=signup["email"],
            name=signup["full_name"],
            metadata={
                "signup_email": signup["email"],
                "signup_full_name": signup["full_name"],
                "is_new_signup": "true",
            },
        )
        customer_id = customer.id
        metadata = checkout_metadata(plan, billing_period, signup=signup)
    else:
        customer_id = _ensure_parent_customer(parent, user.email if user else None)
        metadata = checkout_metadata(
            plan, billing_period, parent=parent, user_id=user.id if user else None
        )

    subscription_data = {"metadata": metadata}
    trial_days = app_config.get("TRIAL_PERIOD_DAYS", 0)
    if trial_days:
        subscription_data["trial_period_days"] = trial_days

    session = stripe.checkout.Session.create(
        customer=customer_id,
        mode="subscription",
        payment_method_types=["card"],
        line_items=[{"price": price_id, "quantity": 1}],
        subscription_data=subscription_data,
        success_url=(
            success_url
            or f"{site_url}/signup-success?session_id={{CHECKOUT_SESSION_ID}}"
        ),
        cancel_url=cancel_url or f"{site_url}/signup?canceled=true",
        metadata=metadata,
    )

    logger.info(
        f"Checkout session {session.id} created for customer {customer_id}: "
        f"{plan}/{billing_period} (new_signup={bool(signup)})"
    )
    return session


def create_portal_session(parent, return_url=None):
    """Create a Stripe Customer Portal Session for a parent.

    Returns the portal session URL.
    Raises NoCustomerError if the parent never checked out.
    Raises stripe.StripeError on API failures.
    """
    if not parent.stripe_customer_id:
        raise NoCustomerError("No Stripe customer ID found. Please subscribe first.")

    _configure_stripe()
    site_url = current_app.config["SITE_URL"]

    session = stripe.billing_portal.Session.create(
        customer=parent.stripe_customer_id,
        return_url=return_url or f"{site_url}/settings",
    )
    return session.url


def verify_checkout_session(session_id):
    """Confirm a checkout finished and describe it for the success page.

    Returns a dict ``{success, email, isNewSignup, customerId, subscriptionId}``.
    Raises CheckoutValidationError if payment did not complete.
    """
    if not session_id:
        raise CheckoutValidationError("Session ID is required")

    _configure_stripe()
    session = stripe.checkout.Session.retrieve(session_id, expand=["subscription"])

    if session.get("payment_status") not in ("paid", "no_payment_required"):
        raise CheckoutValidationError("Payment not completed")

    session_meta = _as_dict(session.get("metadata"))
    subscription = session.get("subscription")
    sub_meta = {}
    if subscription is not None and not isinstance(subscription, str):
        sub_meta = _as_dict(subscription.get("metadata"))

    customer_id = _id_of(session.get("customer"))
    email = session_meta.get("signup_email")
    if not email and customer_id:
        email = _customer_signup_email(customer_id)

    return {
        "success": True,
        "email": email or sub_meta.get("signup_email"),
        "isNewSignup": (
            session_meta.get("is_new_signup") == "true"
            or sub_meta.get("is_new_signup") == "true"
        ),
        "customerId": customer_id,
        "subscriptionId": _id_of(subscription),
    }


def _customer_signup_email(customer_id):
    """Signup email stored on the Stripe customer, or its email. None on failure."""
    try:
        customer = stripe.Customer.retrieve(customer_id)
    except stripe.StripeError as e:
        logger.error(f"Error retrieving customer {customer_id}: {e}")
        return None

    if customer.get("deleted"):
        return None
    metadata = _as_dict(customer.get("metadata"))
    return metadata.get("signup_email") or customer.get("email")


# ──────────────────────────────────────────────
# Webhook Handling
# ──────────────────────────────────────────────

def verify_webhook_signature(payload, sig_header):
    """Verify Stripe webhook signature and construct the event.

    ``payload`` must be the raw request body, untouched.
    Returns the verified Stripe event object.
    Raises stripe.SignatureVerificationError on invalid signature, ValueError
    on a body that is not JSON.
    """
    webhook_secret = current_app.config["STRIPE_WEBHOOK_SECRET"]
    return stripe.Webhook.construct_event(payload, sig_header, webhook_secret)


def handle_webhook_event(event):
    """Process a verified Stripe webhook event.

    Unknown event types are acknowledged and ignored (Stripe retries any
    non-2xx, so they must not fail). A handler exception rolls back,
    dead-letters the event and reports failure so the caller answers 500.

    Returns (success: bool, message: str).
    """
    event_id = event["id"]
    event_type = event["type"]

    handlers = {
        "checkout.session.completed": _handle_checkout_completed,
        "invoice.paid": _handle_invoice_paid,
        "invoice.payment_succeeded": _handle_invoice_paid,
        "invoice.payment_failed": _handle_payment_failed,
        "customer.subscription.updated": _handle_subscription_updated,
        "customer.subscription.deleted": _handle_subscription_deleted,
    }

    handler = handlers.get(event_type)
    if handler is None:
        logger.info(f"Unhandled event type {event_type} ({event_id}), ignoring")
        return True, "ignored"

    try:
        handler(event)
    except Exception as e:
        logger.error(f"Error handling {event_type} ({event_id}): {e}", exc_info=True)
        db.session.rollback()
        obj = event["data"]["object"]
        record_dead_letter(event, str(e), stripe_customer_id=_id_of(obj.get("customer")))
        return False, str(e)

    return True, "processed"


# ──────────────────────────────────────────────
# Event Handlers
# ──────────────────────────────────────────────

def _handle_checkout_completed(event):
    """Handle checkout.session.completed.

    Retrieves the subscription for its current status + metadata, then
    provisions a new signup or activates an existing parent. Subscription
    metadata wins over session metadata.
    """
    session = event["data"]["object"]
    stripe_subscription_id = _id_of(session.get("subscription"))
    stripe_customer_id = _id_of(session.get("customer"))

    if not stripe_subscription_id or not stripe_customer_id:
        logger.warning(
            f"checkout.session.completed {event['id']} has no subscription or customer, ignoring"
        )
        return

    _configure_stripe()
    subscription = stripe.Subscription.retrieve(stripe_subscription_id)

    session_meta = _as_dict(session.get("metadata"))
    sub_meta = _as_dict(subscription.get("metadata"))
    metadata = {**session_meta, **sub_meta}
    plan = metadata.get("plan")

    if metadata.get("is_new_signup") == "true":
        signup_email = metadata.get("signup_email")
        if not signup_email:
            signup_email = _customer_signup_email(stripe_customer_id)

        provision_new_signup(
            stripe_customer_id=stripe_customer_id,
            subscription=subscription,
            plan=plan,
            signup_email=signup_email,
            signup_password=metadata.get("signup_password"),
            signup_full_name=metadata.get("signup_full_name"),
        )
    else:
        activate_existing_account(
            stripe_customer_id,
            subscription,
            plan,
            parent_id=metadata.get("parent_id") or None,
        )


def _invoice_subscription_id(invoice):
    """Subscription of an invoice (top level, or under parent on newer APIs)."""
    sub_id = _id_of(invoice.get("subscription"))
    if sub_id:
        return sub_id
    details = _as_dict(_as_dict(invoice.get("parent")).get("subscription_details"))
    return _id_of(details.get("subscription"))


def _invoice_plan(invoice):
    """Plan from subscription metadata copied onto the invoice, if any."""
    details = _as_dict(invoice.get("subscription_details")) or _as_dict(
        _as_dict(invoice.get("parent")).get("subscription_details")
    )
    plan = _as_dict(details.get("metadata")).get("plan")
    if plan:
        return plan

    lines = _as_dict(invoice.get("lines")).get("data") or []
    for line in lines:
        plan = _as_dict(_as_dict(line).get("metadata")).get("plan")
        if plan:
            return plan
    return None


def _handle_invoice_paid(event):
    """Handle invoice.paid / invoice.payment_succeeded.

    Sets the parent active and records the plan. The $0 invoice Stripe
    issues when a trial starts is not a payment and is ignored.
    """
    invoice = event["data"]["object"]
    stripe_customer_id = _id_of(invoice.get("customer"))
    stripe_subscription_id = _invoice_subscription_id(invoice)

    if (invoice.get("billing_reason") == "subscription_create"
            and not invoice.get("amount_paid")):
        logger.info(f"{event['type']}: trial-start invoice for {stripe_customer_id}, ignoring")
        return

    plan = _invoice_plan(invoice)
    if not plan and stripe_subscription_id:
        _configure_stripe()
        subscription = stripe.Subscription.retrieve(stripe_subscription_id)
        plan = _as_dict(subscription.get("metadata")).get("plan")

    reconcile(
        event,
        stripe_customer_id,
        "active",
        tier=plan if plan in Parent.TIERS else UNCHANGED,
        stripe_subscription_id=stripe_subscription_id,
    )


def _handle_payment_failed(event):
    """Handle invoice.payment_failed -> past_due."""
    invoice = event["data"]["object"]
    reconcile(
        event,
        _id_of(invoice.get("customer")),
        "past_due",
        stripe_subscription_id=_invoice_subscription_id(invoice),
    )


def _handle_subscription_updated(event):
    """Handle customer.subscription.updated.

    Re-maps the Stripe status (plan changes, trial -> active, dunning) and
    mirrors the plan and trial end carried on the subscription.
    """
    sub_data = event["data"]["object"]
    plan = _as_dict(sub_data.get("metadata")).get("plan")

    reconcile(
        event,
        _id_of(sub_data.get("customer")),
        map_subscription_status(sub_data.get("status")),
        tier=plan if plan in Parent.TIERS else UNCHANGED,
        trial_ends_at=timestamp_to_datetime(sub_data.get("trial_end")),
        stripe_subscription_id=sub_data.get("id"),
    )


def _handle_subscription_deleted(event):
    """Handle customer.subscription.deleted -> canceled."""
    sub_data = event["data"]["object"]
    reconcile(
        event,
        _id_of(sub_data.get("customer")),
        "canceled",
        stripe_subscription_id=sub_data.get("id"),
    )


# ──────────────────────────────────────────────
# Dead-letter replay
# ──────────────────────────────────────────────

def replay_dead_letter(letter):
    """Run a stored event through the normal handlers again.

    The letter is resolved if the event now applies (or is deliberately
    skipped). If it fails again, the handler path has already re-recorded
    it, bumping retry_count. Returns (success: bool, message: str).
    """
    payload = dict(letter.payload or {})
    payload.setdefault("id", letter.stripe_event_id)
    payload.setdefault("type", letter.event_type)

    attempts_before = letter.retry_count or 0
    success, message = handle_webhook_event(payload)

    db.session.refresh(letter)
    if not success:
        return False, message
    if (letter.retry_count or 0) > attempts_before:
        return False, letter.failure_reason

    if letter.resolved_at is None:
        letter.resolved_at = datetime.now(timezone.utc)
        db.session.commit()
    logger.info(f"Replayed dead letter {letter.stripe_event_id} ({letter.event_type})")
    return True, message
