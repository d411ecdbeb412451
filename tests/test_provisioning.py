"""Tests for the identity provisioner and polling helper.

Covers:
- Email normalization on create
- Reuse of a user left behind by an earlier delivery; conflict otherwise
- create-or-adopt when the parents row already exists
- Race with the database trigger during provisioning
- Update-by-user fallback and the CRITICAL failure path
- Customer binding never changes once set
- poll(): attempts, backoff, initial delay
"""

import logging
import time
from unittest.mock import MagicMock, patch

import pytest
from werkzeug.security import generate_password_hash

from myceo.errors import (
    CustomerMismatchError,
    IdentityConflictError,
    ProvisioningError,
    SignupDataError,
)
from myceo.extensions import db
from myceo.models.audit import AuditEvent
from myceo.models.dead_letter import WebhookDeadLetter
from myceo.models.parent import Parent
from myceo.models.user import User, normalize_email
from myceo.services.billing_service import record_dead_letter
from myceo.services.provisioning_service import (
    activate_parent,
    create_identity,
    create_or_adopt_parent,
    provision_new_signup,
    resolve_tier,
    subscription_fields,
)
from myceo.services.retry import poll
from myceo.services.signup_crypto import encrypt_signup_password


def _subscription(status="trialing"):
    return {
        "id": "sub_prov",
        "status": status,
        "trial_end": int(time.time()) + 86400 if status == "trialing" else None,
        "metadata": {"plan": "basic"},
    }


def _provision(email="kid.boss@example.com", password="s3cret-pass"):
    return provision_new_signup(
        stripe_customer_id="cus_prov",
        subscription=_subscription(),
        plan="basic",
        signup_email=email,
        signup_password=encrypt_signup_password(password),
        signup_full_name="Kid Boss",
    )


class TestIdentity:

    def test_normalize_email(self):
        assert normalize_email("  Foo@Example.COM ") == "foo@example.com"
        assert normalize_email(None) == ""

    def test_create_identity_normalizes_and_verifies(self):
        user = create_identity("  Foo@Example.COM ", "pw-123456", "Foo Bar")

        assert user.email == "foo@example.com"
        assert user.role == "parent"
        assert user.is_email_verified

    def test_same_signup_reuses_user(self):
        first = create_identity("foo@example.com", "pw-123456", "Foo Bar")
        again = create_identity("FOO@example.com", "pw-123456", "Foo Bar")

        assert again.id == first.id
        assert User.query.count() == 1

    def test_different_password_conflicts(self):
        create_identity("foo@example.com", "pw-123456", "Foo Bar")

        with pytest.raises(IdentityConflictError):
            create_identity("foo@example.com", "another-pass", "Someone Else")


class TestSubscriptionFields:

    def test_trialing_without_trial_end_gets_default(self):
        fields = subscription_fields({"status": "trialing"}, "premium")
        assert fields["subscription_status"] == "trialing"
        assert fields["subscription_tier"] == "premium"
        assert fields["trial_ends_at"] is not None

    def test_incomplete_is_recorded_active(self):
        fields = subscription_fields({"status": "incomplete"}, None)
        assert fields["subscription_status"] == "active"
        assert fields["subscription_tier"] == "standard"
        assert fields["trial_ends_at"] is None

    def test_resolve_tier(self):
        assert resolve_tier("basic") == "basic"
        assert resolve_tier(None) == "standard"
        assert resolve_tier("gold") == "standard"


class TestParentRow:

    def _user(self):
        user = User(email="row@example.com", password_hash=generate_password_hash("x"))
        db.session.add(user)
        db.session.commit()
        return user.id

    def test_create_when_missing(self):
        user_id = self._user()
        fields = subscription_fields({"status": "active"}, "basic")

        parent = create_or_adopt_parent(user_id, fields)

        assert parent is not None
        assert parent.user_id == user_id
        assert Parent.query.count() == 1

    def test_adopts_existing_row(self):
        """Trigger already inserted the row -> unique conflict -> adopt it."""
        user_id = self._user()
        existing = Parent(user_id=user_id, subscription_status="trialing")
        db.session.add(existing)
        db.session.commit()
        existing_id = existing.id

        parent = create_or_adopt_parent(user_id, subscription_fields({"status": "active"}, None))

        assert parent.id == existing_id
        assert Parent.query.count() == 1

    def test_customer_binding_is_permanent(self):
        user_id = self._user()
        parent = Parent(user_id=user_id, stripe_customer_id="cus_first")
        db.session.add(parent)
        db.session.commit()

        with pytest.raises(CustomerMismatchError):
            activate_parent(
                parent, "cus_second", "sub_2", subscription_fields({"status": "active"}, None)
            )
        assert db.session.get(Parent, parent.id).stripe_customer_id == "cus_first"


@patch("myceo.services.provisioning_service.send_email")
class TestProvisionNewSignup:

    def test_full_flow_creates_one_parent(self, mock_send):
        parent = _provision()

        assert parent.stripe_customer_id == "cus_prov"
        assert parent.subscription_tier == "basic"
        assert parent.subscription_status == "trialing"
        mock_send.assert_called_once()

    def test_trigger_row_appears_during_provisioning(self, mock_send):
        """The trigger's insert lands between our lookups and our insert."""

        def trigger_wins(fetch, **kwargs):
            user = User.query.filter_by(email="kid.boss@example.com").first()
            if Parent.query.filter_by(user_id=user.id).first() is None:
                db.session.add(Parent(user_id=user.id, subscription_status="trialing"))
                db.session.commit()
            return None

        with patch("myceo.services.provisioning_service.poll", side_effect=trigger_wins):
            parent = _provision()

        assert Parent.query.count() == 1
        assert parent.stripe_customer_id == "cus_prov"
        assert parent.subscription_tier == "basic"

    def test_falls_back_to_update_by_user(self, mock_send):
        """Row exists but lookups never see it -> UPDATE keyed by user_id."""
        real_create = create_identity

        def create_with_row(email, password, full_name):
            user = real_create(email, password, full_name)
            db.session.add(Parent(user_id=user.id, subscription_status="trialing"))
            db.session.commit()
            return user

        with patch("myceo.services.provisioning_service.create_identity",
                   side_effect=create_with_row), \
                patch("myceo.services.provisioning_service.locate_parent",
                      return_value=None):
            result = _provision()

        assert result is None
        parent = Parent.query.one()
        assert parent.stripe_customer_id == "cus_prov"
        assert parent.stripe_subscription_id == "sub_prov"
        assert parent.subscription_tier == "basic"
        mock_send.assert_called_once()

    def test_update_by_user_resolves_dead_letters(self, mock_send):
        """Fallback path closes the customer's backlog and leaves an audit row."""
        record_dead_letter(
            {"id": "evt_early", "type": "customer.subscription.updated",
             "data": {"object": {}}},
            "No parent for customer cus_prov",
            stripe_customer_id="cus_prov",
        )
        real_create = create_identity

        def create_with_row(email, password, full_name):
            user = real_create(email, password, full_name)
            db.session.add(Parent(user_id=user.id, subscription_status="trialing"))
            db.session.commit()
            return user

        with patch("myceo.services.provisioning_service.create_identity",
                   side_effect=create_with_row), \
                patch("myceo.services.provisioning_service.locate_parent",
                      return_value=None):
            _provision()

        assert WebhookDeadLetter.query.filter_by(stripe_event_id="evt_early").one().is_resolved
        audit = AuditEvent.query.filter_by(action="account.provisioned").one()
        assert audit.metadata_["stripe_customer_id"] == "cus_prov"

    def test_no_row_anywhere_is_critical(self, mock_send, caplog):
        with patch("myceo.services.provisioning_service.locate_parent", return_value=None):
            with caplog.at_level(logging.CRITICAL):
                with pytest.raises(ProvisioningError):
                    _provision()

        assert any(
            r.levelno == logging.CRITICAL and "cus_prov" in r.getMessage()
            for r in caplog.records
        )
        mock_send.assert_not_called()

    def test_retry_after_failure_completes(self, mock_send):
        """A failed attempt leaves the user behind; the redelivery finishes the job."""
        with patch("myceo.services.provisioning_service.locate_parent", return_value=None):
            with pytest.raises(ProvisioningError):
                _provision()

        parent = _provision()

        assert User.query.count() == 1
        assert parent.stripe_customer_id == "cus_prov"

    def test_existing_customer_skips_identity_and_email(self, mock_send):
        _provision()
        mock_send.reset_mock()

        parent = _provision()

        assert Parent.query.count() == 1
        assert parent.stripe_customer_id == "cus_prov"
        mock_send.assert_not_called()

    def test_garbled_password_is_rejected(self, mock_send):
        with pytest.raises(SignupDataError):
            provision_new_signup(
                stripe_customer_id="cus_prov",
                subscription=_subscription(),
                plan="basic",
                signup_email="kid.boss@example.com",
                signup_password="not-a-fernet-token",
                signup_full_name="Kid Boss",
            )
        assert User.query.count() == 0

    def test_email_failure_does_not_break_provisioning(self, mock_send):
        mock_send.side_effect = RuntimeError("smtp down")

        parent = _provision()

        assert parent.stripe_customer_id == "cus_prov"


class TestPoll:

    def test_returns_first_hit(self):
        fetch = MagicMock(side_effect=[None, None, "row"])
        sleep = MagicMock()

        assert poll(fetch, attempts=5, interval=1.0, sleep=sleep) == "row"
        assert fetch.call_count == 3
        assert sleep.call_count == 2
        sleep.assert_called_with(1.0)

    def test_gives_up_after_attempts(self):
        fetch = MagicMock(return_value=None)
        sleep = MagicMock()

        assert poll(fetch, attempts=4, interval=0.5, sleep=sleep) is None
        assert fetch.call_count == 4
        # No sleep after the last miss
        assert sleep.call_count == 3

    def test_initial_delay_and_custom_predicate(self):
        fetch = MagicMock(side_effect=[0, 1, 2])
        sleep = MagicMock()

        result = poll(fetch, attempts=3, interval=0, until=lambda r: r >= 2,
                      initial_delay=3.0, sleep=sleep)

        assert result == 2
        sleep.assert_called_once_with(3.0)

    def test_at_least_one_attempt(self):
        fetch = MagicMock(return_value="x")
        assert poll(fetch, attempts=0, interval=0, sleep=MagicMock()) == "x"
