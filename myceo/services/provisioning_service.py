"""Identity provisioner — first successful checkout -> user + parent.

Stripe has already charged (or started the trial for) the customer when
checkout.session.completed arrives. This module's only job is to make the
local rows match, and it must be safe to run again in full on redelivery.

The parents row has two possible creators: the database trigger that fires
on every users insert, and this module. Whoever loses the race adopts the
winner's row:

    1. create (or adopt) the user from the signup metadata
    2. poll for the trigger-created parents row
    3. create-or-adopt the parents row ourselves
    4. wait longer, re-poll, create-or-adopt once more, then fall back to
       an UPDATE keyed by user_id
    5. write the subscription state, fire the welcome email
"""

import logging
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash

from myceo.errors import (
    AccountNotFoundError,
    CustomerMismatchError,
    IdentityConflictError,
    ProvisioningError,
    SignupDataError,
)
from myceo.extensions import db
from myceo.models.parent import Parent
from myceo.models.user import User, normalize_email
from myceo.services.billing_service import (
    get_parent_by_customer,
    log_billing_audit,
    resolve_dead_letters,
)
from myceo.services.email_service import send_email
from myceo.services.retry import poll
from myceo.services.signup_crypto import decrypt_signup_password

logger = logging.getLogger(__name__)

DEFAULT_TIER = "standard"


def timestamp_to_datetime(ts):
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def resolve_tier(plan):
    """Plan name from checkout metadata, falling back to the default tier."""
    if plan in Parent.TIERS:
        return plan
    if plan:
        logger.warning(f"Unknown plan '{plan}' in checkout metadata, using {DEFAULT_TIER}")
    return DEFAULT_TIER


def subscription_fields(subscription, plan):
    """Parents columns for a freshly completed checkout.

    A checkout only ever leaves the subscription trialing or active, so
    any other Stripe status is recorded as active.
    """
    status = "trialing" if subscription.get("status") == "trialing" else "active"
    trial_ends_at = timestamp_to_datetime(subscription.get("trial_end"))
    if trial_ends_at is None and status == "trialing":
        days = current_app.config.get("TRIAL_PERIOD_DAYS", 1)
        trial_ends_at = datetime.now(timezone.utc) + timedelta(days=days)

    return {
        "subscription_tier": resolve_tier(plan),
        "subscription_status": status,
        "trial_ends_at": trial_ends_at,
    }


# ──────────────────────────────────────────────
# Identity
# ──────────────────────────────────────────────

def create_identity(email, password, full_name):
    """Create the user for a paid signup, email pre-verified.

    If the email is already taken by a user whose password matches the
    signup's, that user came from an earlier delivery of this same
    checkout and is reused. Any other existing user is a conflict.

    Raises IdentityConflictError. Commits.
    """
    email = normalize_email(email)

    existing = User.query.filter_by(email=email).first()
    if existing:
        if check_password_hash(existing.password_hash, password):
            logger.info(f"Reusing user {existing.id} for {email} from an earlier delivery")
            return existing
        raise IdentityConflictError(f"A user with email {email} already exists")

    user = User(
        email=email,
        password_hash=generate_password_hash(password),
        full_name=full_name,
        role="parent",
        # Payment already proves the address is reachable.
        email_verified_at=datetime.now(timezone.utc),
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        raise IdentityConflictError(
            f"Could not create user for {email}: email already registered"
        ) from e

    logger.info(f"Created user {user.id} for {email}")
    return user


# ──────────────────────────────────────────────
# Parent row: find / create-or-adopt / fallback
# ──────────────────────────────────────────────

def find_parent_by_user(user_id):
    return Parent.query.filter_by(user_id=user_id).first()


def create_or_adopt_parent(user_id, fields):
    """Insert the parents row for ``user_id``, or adopt the one that beat us.

    A unique-constraint conflict means the trigger (or a concurrent
    delivery) created the row first: roll back our insert and re-fetch.
    Returns the Parent, or None if it could neither be created nor seen.
    """
    parent = Parent(
        user_id=user_id,
        subscription_status=fields["subscription_status"],
        trial_ends_at=fields["trial_ends_at"],
    )
    db.session.add(parent)
    try:
        db.session.commit()
        logger.info(f"Created parent {parent.id} for user {user_id} (trigger had not run)")
        return parent
    except IntegrityError:
        db.session.rollback()
        logger.info(f"Parent for user {user_id} already exists, adopting it")
        return find_parent_by_user(user_id)
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.warning(f"Could not create parent for user {user_id}: {e}")
        return None


def locate_parent(user_id, fields):
    """Find or create the parents row for a new user. Returns Parent or None."""
    config = current_app.config

    def fetch():
        return find_parent_by_user(user_id)

    parent = poll(
        fetch,
        attempts=config["PROVISION_POLL_ATTEMPTS"],
        interval=config["PROVISION_POLL_INTERVAL"],
        label=f"parent lookup for user {user_id}",
    )
    if parent is None:
        parent = create_or_adopt_parent(user_id, fields)

    if parent is None:
        logger.warning(f"Parent for user {user_id} still missing, waiting longer")
        parent = poll(
            fetch,
            attempts=1,
            interval=0,
            initial_delay=config["PROVISION_FINAL_WAIT"],
            label=f"final parent lookup for user {user_id}",
        )
        if parent is None:
            parent = create_or_adopt_parent(user_id, fields)

    return parent


def activate_by_user(user_id, stripe_customer_id, stripe_subscription_id, fields):
    """Last resort: write the subscription state with an UPDATE keyed by user_id.

    Covers a row that exists but was invisible to the point lookups
    (replication lag). Raises ProvisioningError, after a CRITICAL log, if
    no row could be updated.
    """
    try:
        updated = (
            Parent.query
            .filter(
                Parent.user_id == user_id,
                or_(
                    Parent.stripe_customer_id.is_(None),
                    Parent.stripe_customer_id == stripe_customer_id,
                ),
            )
            .update(
                {
                    **fields,
                    "stripe_customer_id": stripe_customer_id,
                    "stripe_subscription_id": stripe_subscription_id,
                },
                synchronize_session=False,
            )
        )
        if updated:
            log_billing_audit(None, "account.provisioned", {
                "user_id": user_id,
                "stripe_customer_id": stripe_customer_id,
                "via": "update_by_user",
            })
            resolve_dead_letters(stripe_customer_id)
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.critical(
            f"CRITICAL: paying customer {stripe_customer_id} has no account: "
            f"update by user_id {user_id} failed: {e}"
        )
        raise ProvisioningError(
            f"Could not provision parent for user {user_id}"
        ) from e

    if not updated:
        logger.critical(
            f"CRITICAL: paying customer {stripe_customer_id} has no account: "
            f"no parent row for user {user_id} after all attempts"
        )
        raise ProvisioningError(f"Could not provision parent for user {user_id}")

    logger.warning(f"Activated parent for user {user_id} via update-by-user fallback")


# ──────────────────────────────────────────────
# Activation
# ──────────────────────────────────────────────

def activate_parent(parent, stripe_customer_id, stripe_subscription_id, fields):
    """Write a completed checkout's subscription state onto ``parent``.

    stripe_customer_id is only ever set once; a row already bound to a
    different customer raises CustomerMismatchError. A row that already
    mirrors ``stripe_subscription_id`` was activated by an earlier delivery
    of this checkout; its status now belongs to the reconciler and is left
    alone. Commits.
    """
    if parent.stripe_customer_id and parent.stripe_customer_id != stripe_customer_id:
        raise CustomerMismatchError(
            f"Parent {parent.id} is bound to {parent.stripe_customer_id}, "
            f"not {stripe_customer_id}"
        )

    if stripe_subscription_id and parent.stripe_subscription_id == stripe_subscription_id:
        logger.info(
            f"Parent {parent.id} already mirrors {stripe_subscription_id} "
            f"({parent.subscription_status}), checkout redelivery ignored"
        )
        return parent

    parent.stripe_customer_id = stripe_customer_id
    parent.stripe_subscription_id = stripe_subscription_id
    parent.subscription_tier = fields["subscription_tier"]
    parent.subscription_status = fields["subscription_status"]
    parent.trial_ends_at = fields["trial_ends_at"]

    log_billing_audit(parent.id, "subscription.activated", {
        "stripe_customer_id": stripe_customer_id,
        "stripe_subscription_id": stripe_subscription_id,
        "tier": fields["subscription_tier"],
        "status": fields["subscription_status"],
    })
    resolve_dead_letters(stripe_customer_id)

    try:
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        raise CustomerMismatchError(
            f"Customer {stripe_customer_id} is already bound to another parent"
        ) from e

    logger.info(
        f"Parent {parent.id} activated: {fields['subscription_tier']} - "
        f"{fields['subscription_status']}"
    )
    return parent


def provision_new_signup(stripe_customer_id, subscription, plan,
                         signup_email, signup_password, signup_full_name):
    """Create (or find) the user + parent for a paid signup and activate it.

    Args:
        stripe_customer_id: Customer from the checkout session.
        subscription:       Stripe subscription (dict-like), freshly retrieved.
        plan:               Plan from checkout metadata.
        signup_email:       Email from metadata (normalized again here).
        signup_password:    Encrypted password from metadata.
        signup_full_name:   Display name from metadata.

    Returns the Parent, or None when state was written via the
    update-by-user fallback. Raises SignupDataError, IdentityConflictError,
    CustomerMismatchError or ProvisioningError.
    """
    fields = subscription_fields(subscription, plan)
    stripe_subscription_id = subscription.get("id")

    # Redelivery: this customer already has an account.
    existing = get_parent_by_customer(stripe_customer_id)
    if existing:
        logger.info(
            f"Customer {stripe_customer_id} already provisioned as parent {existing.id}, "
            f"checking subscription state"
        )
        return activate_parent(existing, stripe_customer_id, stripe_subscription_id, fields)

    if not signup_email or not signup_password or not signup_full_name:
        raise SignupDataError(
            f"Missing signup data for customer {stripe_customer_id}: "
            f"email={bool(signup_email)} password={bool(signup_password)} "
            f"full_name={bool(signup_full_name)}"
        )

    password = decrypt_signup_password(signup_password)
    user = create_identity(signup_email, password, signup_full_name)
    user_id = user.id

    parent = locate_parent(user_id, fields)
    if parent is None:
        activate_by_user(user_id, stripe_customer_id, stripe_subscription_id, fields)
    else:
        activate_parent(parent, stripe_customer_id, stripe_subscription_id, fields)
        log_billing_audit(parent.id, "account.provisioned", {
            "user_id": user_id,
            "stripe_customer_id": stripe_customer_id,
        })
        db.session.commit()

    _send_welcome_email(user, fields)
    return parent


def activate_existing_account(stripe_customer_id, subscription, plan, parent_id=None):
    """Activate the subscription for a parent that checked out while logged in.

    Looks the parent up by customer first, then by the parent_id carried in
    checkout metadata. Raises AccountNotFoundError or CustomerMismatchError.
    """
    parent = get_parent_by_customer(stripe_customer_id)
    if parent is None and parent_id:
        parent = db.session.get(Parent, parent_id)

    if parent is None:
        raise AccountNotFoundError(f"Parent not found for customer {stripe_customer_id}")

    fields = subscription_fields(subscription, plan)
    return activate_parent(parent, stripe_customer_id, subscription.get("id"), fields)


# ──────────────────────────────────────────────
# Email Notifications
# ──────────────────────────────────────────────

def _send_welcome_email(user, fields):
    """Welcome a newly provisioned parent. Best-effort, never retried."""
    try:
        site_url = current_app.config["SITE_URL"]
        send_email(
            to=user.email,
            subject="Welcome to MyCEO!",
            template="emails/welcome.html",
            context={
                "full_name": user.full_name or "",
                "email": user.email,
                "plan": fields["subscription_tier"],
                "trial_ends_at": fields["trial_ends_at"],
                "login_url": f"{site_url}/login",
            },
        )
    except Exception as e:
        # Never let email failure break provisioning
        logger.error(f"Failed to send welcome email to {user.email}: {e}")
