"""Parent model (account record).

Local mirror of a customer's Stripe subscription. One row per user.

- stripe_customer_id is the join key for every webhook after the first
  checkout; once set it never changes.
- subscription_status is the source of truth for entitlement gating in
  the rest of the product.
"""

import uuid

from myceo.extensions import db


class Parent(db.Model):
    __tablename__ = "parents"

    TIERS = ["basic", "standard", "premium"]
    BILLING_PERIODS = ["monthly", "annual"]

    # -- Valid statuses (mapped from Stripe) --
    STATUSES = [
        "trialing",
        "active",
        "past_due",
        "canceled",
        "unpaid",
    ]
    # Only a new checkout moves a row out of these.
    TERMINAL_STATUSES = ["canceled", "unpaid"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36),
        db.ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    stripe_customer_id = db.Column(
        db.String(255), unique=True, nullable=True
    )  # e.g. "cus_Abc..."
    stripe_subscription_id = db.Column(
        db.String(255), nullable=True
    )  # subscription this row currently mirrors
    subscription_tier = db.Column(db.String(50), nullable=True)  # basic | standard | premium
    subscription_status = db.Column(
        db.String(50), nullable=False, default="trialing"
    )  # trialing | active | past_due | canceled | unpaid
    trial_ends_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="parent")

    @property
    def has_access(self):
        return self.subscription_status in ("trialing", "active", "past_due")

    def __repr__(self):
        return f"<Parent {self.subscription_tier} ({self.subscription_status})>"
