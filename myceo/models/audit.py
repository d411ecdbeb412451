"""Audit event model.

Logs billing transitions (account provisioned, subscription activated,
status changes) for support and debugging.
"""

import uuid

from myceo.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    parent_id = db.Column(
        db.String(36), db.ForeignKey("parents.id", ondelete="SET NULL"), nullable=True
    )
    action = db.Column(db.String(255), nullable=False)  # e.g. "account.provisioned"
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid Python builtin clash
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
