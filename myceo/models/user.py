"""User model (identity).

Login credential + profile. Created once per human by the identity
provisioner when their first checkout completes. Flask-Login integration
via UserMixin.
"""

import uuid

from flask_login import UserMixin

from myceo.extensions import db


def normalize_email(email):
    """Trim + lowercase. Every stored and looked-up email goes through this."""
    return (email or "").strip().lower()


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255))
    role = db.Column(db.String(50), nullable=False, default="parent")  # parent | admin
    email_verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    parent = db.relationship("Parent", back_populates="user", uselist=False)

    @property
    def is_email_verified(self):
        return self.email_verified_at is not None

    def __repr__(self):
        return f"<User {self.email}>"
