"""Billing / provisioning exceptions.

Service functions raise these; blueprints turn them into JSON responses.
Anything raised while handling a verified webhook ends up as a 500 so
Stripe redelivers the event.
"""


class BillingError(Exception):
    """Base class for checkout, provisioning and reconciliation errors."""

    status_code = 500


class CheckoutValidationError(BillingError):
    """Bad plan / billing period / signup payload from the caller."""

    status_code = 400


class AccountNotFoundError(BillingError):
    """No parents row for the caller or for a checkout's customer."""

    status_code = 404


class SignupDataError(BillingError):
    """Signup metadata on a checkout is missing or cannot be decrypted."""


class IdentityConflictError(BillingError):
    """A user with the signup email exists and is not this pending signup."""


class CustomerMismatchError(BillingError):
    """The parents row is already bound to a different Stripe customer."""


class ProvisioningError(BillingError):
    """The parents row could not be created or located after every fallback."""


class NoCustomerError(BillingError):
    """The parent has never checked out, so there is no Stripe customer."""

    status_code = 400
