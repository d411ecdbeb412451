"""Encryption for the pending-signup password.

A new signup's password has to survive the round trip through Stripe
checkout metadata until the webhook creates the user. It is Fernet-encrypted
with SIGNUP_ENCRYPTION_KEY before it leaves the app and decrypted right
before hashing. In debug, if no key is configured, a per-process key is
generated so local flows don't break.
"""

import logging

from cryptography.fernet import Fernet, InvalidToken
from flask import current_app

from myceo.errors import SignupDataError

logger = logging.getLogger(__name__)


def _get_fernet():
    app = current_app._get_current_object()
    key = app.config.get("SIGNUP_ENCRYPTION_KEY")
    if not key:
        if not app.debug:
            raise RuntimeError("SIGNUP_ENCRYPTION_KEY is not configured")
        key = app.extensions.get("myceo_signup_key")
        if not key:
            logger.warning(
                "SIGNUP_ENCRYPTION_KEY not set; generating a transient key (dev only)"
            )
            key = Fernet.generate_key().decode()
            app.extensions["myceo_signup_key"] = key
    return Fernet(str(key).encode())


def encrypt_signup_password(password):
    """Encrypt a plaintext password for checkout metadata."""
    return _get_fernet().encrypt(password.encode("utf-8")).decode("utf-8")


def decrypt_signup_password(token):
    """Decrypt a password taken from checkout metadata.

    Raises SignupDataError if the token was not produced with our key.
    """
    try:
        return _get_fernet().decrypt(token.encode("utf-8")).decode("utf-8")
    except (InvalidToken, ValueError) as e:
        raise SignupDataError("Signup password in metadata could not be decrypted") from e


def generate_key():
    return Fernet.generate_key().decode()
