# Import all models so Alembic can discover them.

from myceo.models.user import User  # noqa: F401
from myceo.models.parent import Parent  # noqa: F401
from myceo.models.dead_letter import WebhookDeadLetter  # noqa: F401
from myceo.models.audit import AuditEvent  # noqa: F401
