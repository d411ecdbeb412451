"""Webhook dead-letter model.

Stripe events that were verified but could not be applied: events for a
customer that has no parents row yet, and events whose handler raised.
Kept for `flask replay-dead-letters` and for operators following a
CRITICAL provisioning log line. Indexed by customer so provisioning can
resolve a customer's backlog once the account exists.
"""

import uuid

from myceo.extensions import db


class WebhookDeadLetter(db.Model):
    __tablename__ = "webhook_dead_letters"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    stripe_event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(db.String(255), nullable=False)
    stripe_customer_id = db.Column(db.String(255), nullable=True, index=True)
    payload = db.Column(db.JSON, nullable=False)  # full event, replayable
    failure_reason = db.Column(db.Text, nullable=False)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    last_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    @property
    def is_resolved(self):
        return self.resolved_at is not None

    def __repr__(self):
        return f"<WebhookDeadLetter {self.stripe_event_id} ({self.event_type})>"
