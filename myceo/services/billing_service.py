"""Billing service — subscription reconciliation and DB sync helpers.

Responsible for:
- Mapping Stripe subscription statuses onto parents.subscription_status
- Applying a status/tier change to the parents row for a Stripe customer
  as one keyed UPDATE (no read-modify-write)
- Recording webhook events that could not be applied (dead letters)
- Billing audit rows
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from myceo.extensions import db
from myceo.models.audit import AuditEvent
from myceo.models.dead_letter import WebhookDeadLetter
from myceo.models.parent import Parent

logger = logging.getLogger(__name__)

# Sentinel for "leave this column alone" where None is a meaningful value.
UNCHANGED = object()

_STATUS_MAP = {
    "trialing": "trialing",
    "active": "active",
    "past_due": "past_due",
    "canceled": "canceled",
    "unpaid": "unpaid",
}


def map_subscription_status(stripe_status):
    """Map a Stripe subscription status to a local subscription_status.

    trialing / active / past_due map to themselves, canceled / unpaid pass
    through, anything else (incomplete, paused, None, ...) maps to active so
    a paying customer never lands in a state the product cannot gate on.
    """
    return _STATUS_MAP.get(stripe_status, "active")


def get_parent_by_customer(stripe_customer_id):
    """Look up the parents row for a Stripe customer ID. Returns Parent or None."""
    if not stripe_customer_id:
        return None
    return Parent.query.filter_by(stripe_customer_id=stripe_customer_id).first()


def apply_subscription_state(stripe_customer_id, status, tier=UNCHANGED,
                             trial_ends_at=UNCHANGED, stripe_subscription_id=None):
    """Write a subscription state onto the parent for ``stripe_customer_id``.

    One UPDATE keyed by customer, so concurrent deliveries for the same
    customer serialize in the database and the last write wins.

    Guards (part of the WHERE clause):
        - if ``stripe_subscription_id`` is given, rows mirroring a different
          subscription are left alone (stale event for an old subscription)
        - a non-terminal status is never written over canceled / unpaid

    Returns the number of rows updated (0 or 1). Does not commit.
    """
    values = {"subscription_status": status}
    if tier is not UNCHANGED and tier:
        values["subscription_tier"] = tier
    if trial_ends_at is not UNCHANGED:
        values["trial_ends_at"] = trial_ends_at

    query = Parent.query.filter(Parent.stripe_customer_id == stripe_customer_id)
    if stripe_subscription_id:
        query = query.filter(or_(
            Parent.stripe_subscription_id.is_(None),
            Parent.stripe_subscription_id == stripe_subscription_id,
        ))
    if status not in Parent.TERMINAL_STATUSES:
        query = query.filter(
            Parent.subscription_status.notin_(Parent.TERMINAL_STATUSES)
        )

    return query.update(values, synchronize_session="fetch")


def reconcile(event, stripe_customer_id, status, tier=UNCHANGED,
              trial_ends_at=UNCHANGED, stripe_subscription_id=None):
    """Apply a webhook-driven state change and classify the outcome.

    Returns one of:
        "updated"   — the parents row now reflects the event
        "skipped"   — row exists but a guard kept it (stale / terminal)
        "no_parent" — no row for this customer yet; event dead-lettered

    An event for an unknown customer is dropped with a warning rather than
    retried: the provisioning flow re-applies the full state when it runs
    and resolves the dead letters for the customer.
    """
    event_type = event["type"]

    if not stripe_customer_id:
        logger.warning(f"{event_type}: event {event['id']} has no customer, ignoring")
        return "skipped"

    updated = apply_subscription_state(
        stripe_customer_id,
        status,
        tier=tier,
        trial_ends_at=trial_ends_at,
        stripe_subscription_id=stripe_subscription_id,
    )

    if updated:
        parent = get_parent_by_customer(stripe_customer_id)
        log_billing_audit(parent.id if parent else None, f"subscription.{status}", {
            "event_id": event["id"],
            "event_type": event_type,
            "stripe_customer_id": stripe_customer_id,
            "stripe_subscription_id": stripe_subscription_id,
            "tier": None if tier is UNCHANGED else tier,
        })
        db.session.commit()
        logger.info(f"{event_type}: customer {stripe_customer_id} -> {status}")
        return "updated"

    if get_parent_by_customer(stripe_customer_id) is not None:
        logger.info(
            f"{event_type}: customer {stripe_customer_id} not moved to {status} "
            f"(stale subscription or terminal status)"
        )
        return "skipped"

    logger.warning(
        f"{event_type}: no parent for customer {stripe_customer_id}, "
        f"dropping event {event['id']}"
    )
    record_dead_letter(
        event,
        f"No parent for customer {stripe_customer_id}",
        stripe_customer_id=stripe_customer_id,
    )
    return "no_parent"


# ──────────────────────────────────────────────
# Dead letters
# ──────────────────────────────────────────────

def record_dead_letter(event, reason, stripe_customer_id=None):
    """Persist a webhook event that could not be applied.

    Same event id again bumps retry_count and reopens the letter. Commits its
    own transaction; callers must have rolled back any failed work first.
    Returns the WebhookDeadLetter, or None if even this write failed.
    """
    now = datetime.now(timezone.utc)
    try:
        letter = WebhookDeadLetter.query.filter_by(
            stripe_event_id=event["id"]
        ).first()
        if letter:
            letter.retry_count = (letter.retry_count or 0) + 1
            letter.failure_reason = reason
            letter.last_attempt_at = now
            letter.resolved_at = None
            if stripe_customer_id:
                letter.stripe_customer_id = stripe_customer_id
        else:
            letter = WebhookDeadLetter(
                stripe_event_id=event["id"],
                event_type=event["type"],
                stripe_customer_id=stripe_customer_id,
                payload=_event_to_dict(event),
                failure_reason=reason,
                retry_count=0,
                last_attempt_at=now,
            )
            db.session.add(letter)
        db.session.commit()
        return letter
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.critical(
            f"Could not record dead letter for event {event['id']} "
            f"(customer={stripe_customer_id}): {reason} / {e}"
        )
        return None


def resolve_dead_letters(stripe_customer_id):
    """Mark every open dead letter for a customer as resolved.

    Called once provisioning has written the full subscription state for
    the customer, which supersedes whatever those events carried.
    Returns the number of letters resolved. Does not commit.
    """
    if not stripe_customer_id:
        return 0
    return (
        WebhookDeadLetter.query
        .filter(
            WebhookDeadLetter.stripe_customer_id == stripe_customer_id,
            WebhookDeadLetter.resolved_at.is_(None),
        )
        .update(
            {"resolved_at": datetime.now(timezone.utc)},
            synchronize_session="fetch",
        )
    )


def _event_to_dict(event):
    """Plain-JSON copy of a Stripe event (StripeObject or dict)."""
    to_dict = getattr(event, "to_dict_recursive", None) or getattr(event, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(event)


# ──────────────────────────────────────────────
# Audit
# ──────────────────────────────────────────────

def log_billing_audit(parent_id, action, metadata=None):
    """Log a billing-related audit event.

    Webhook events are system-initiated, so there is no actor.
    """
    event = AuditEvent(
        parent_id=parent_id,
        action=action,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()
