"""
tests/test_gateway.py -- Unit tests for AuthGateway flows.

The gateway is built on a real AccountStore (shared-memory SQLite), a stub
external validator, a recording notifier and a MutableClock, so expiry is
tested by moving the clock rather than sleeping.

Covers:
  - register: EmailInUse (case-insensitive), role User, token only to notifier
  - verify_email / resend_verification: single use, supersession
  - login: role snapshot in the access token; uniform invalid_credentials
  - refresh: rotation, reuse rejected, expiry, conflict on a concurrent rotation
  - external_login: create, repeat, link-by-email, unsupported provider
  - forgot/reset password: generic message, expiry, single use, session revocation
  - logout and admin bootstrap
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError

from auth.errors import (
    EmailInUseError,
    ExpiredRefreshTokenError,
    ExpiredResetTokenError,
    InvalidCredentialsError,
    InvalidExternalTokenError,
    InvalidRefreshTokenError,
    InvalidResetTokenError,
    InvalidVerificationTokenError,
    SessionConflictError,
    UnsupportedProviderError,
)
from auth.gateway import FORGOT_PASSWORD_MESSAGE, REGISTERED_MESSAGE, RESEND_VERIFICATION_MESSAGE
from auth.models import Account, Role
from auth.tokens import decode_access_token, hash_password, hash_token

PASSWORD = "Passw0rd!"


def _register(gateway, email: str = "a@b.com") -> Account:
    gateway.register(email, PASSWORD, full_name="Ana", phone_number="555")
    return gateway.store.get_by_email(email)


class TestRegister:
    def test_creates_unverified_user(self, gateway, notifier) -> None:
        assert gateway.register("a@b.com", PASSWORD) == REGISTERED_MESSAGE
        account = gateway.store.get_by_email("a@b.com")
        assert account.role == Role.USER.value
        assert account.is_email_verified is False
        assert account.password_hash != PASSWORD
        # Only the digest is stored; the raw token went to the notifier.
        email, raw = notifier.verifications[-1]
        assert email == "a@b.com"
        assert account.email_verification_token == hash_token(raw)

    def test_email_in_use_is_case_insensitive(self, gateway) -> None:
        _register(gateway, "a@b.com")
        with pytest.raises(EmailInUseError):
            gateway.register("A@B.com", PASSWORD)

    def test_insert_race_maps_to_email_in_use(self, gateway) -> None:
        with patch.object(gateway.store, "create_account", side_effect=IntegrityError("insert", {}, Exception())):
            with pytest.raises(EmailInUseError):
                gateway.register("race@b.com", PASSWORD)

    def test_notifier_failure_does_not_fail_registration(self, gateway, notifier) -> None:
        notifier.deliver = False
        assert gateway.register("a@b.com", PASSWORD) == REGISTERED_MESSAGE
        assert gateway.store.get_by_email("a@b.com") is not None


class TestEmailVerification:
    def test_token_is_single_use(self, gateway, notifier) -> None:
        account = _register(gateway)
        token = notifier.last_verification(account.email)

        gateway.verify_email(token)
        assert gateway.store.get_by_id(account.id).is_email_verified is True

        with pytest.raises(InvalidVerificationTokenError):
            gateway.verify_email(token)

    def test_unknown_token(self, gateway) -> None:
        with pytest.raises(InvalidVerificationTokenError):
            gateway.verify_email("never-issued")

    def test_resend_supersedes_previous_token(self, gateway, notifier) -> None:
        account = _register(gateway)
        first = notifier.last_verification(account.email)

        assert gateway.resend_verification(account.email) == RESEND_VERIFICATION_MESSAGE
        second = notifier.last_verification(account.email)
        assert second != first

        with pytest.raises(InvalidVerificationTokenError):
            gateway.verify_email(first)
        gateway.verify_email(second)

    def test_resend_is_silent_for_unknown_and_verified(self, gateway, notifier) -> None:
        account = _register(gateway)
        gateway.verify_email(notifier.last_verification(account.email))
        sent = len(notifier.verifications)

        assert gateway.resend_verification(account.email) == RESEND_VERIFICATION_MESSAGE
        assert gateway.resend_verification("ghost@b.com") == RESEND_VERIFICATION_MESSAGE
        assert len(notifier.verifications) == sent


class TestLogin:
    def test_access_token_carries_role_snapshot(self, gateway) -> None:
        account = _register(gateway)
        pair = gateway.login("a@b.com", PASSWORD)

        claims = decode_access_token(pair.access_token)
        assert claims["sub"] == str(account.id)
        assert claims["role"] == Role.USER.value
        assert claims["email"] == "a@b.com"
        assert pair.expires_in == 15 * 60

    def test_login_stores_only_the_refresh_digest(self, gateway) -> None:
        account = _register(gateway)
        pair = gateway.login("a@b.com", PASSWORD)
        stored = gateway.store.get_by_id(account.id)
        assert stored.refresh_token == hash_token(pair.refresh_token)

    def test_refresh_expiry_is_thirty_days(self, gateway, clock) -> None:
        account = _register(gateway)
        gateway.login("a@b.com", PASSWORD)
        stored = gateway.store.get_by_id(account.id)
        assert (stored.refresh_token_expires_at - clock.now).days == 30

    @pytest.mark.parametrize(
        ("email", "password"),
        [("a@b.com", "wrong-password"), ("ghost@b.com", PASSWORD), ("ext@b.com", PASSWORD)],
    )
    def test_failures_are_indistinguishable(self, gateway, email, password) -> None:
        _register(gateway)
        gateway.store.create_account(Account(email="ext@b.com", is_email_verified=True))
        with pytest.raises(InvalidCredentialsError) as exc_info:
            gateway.login(email, password)
        assert exc_info.value.message == InvalidCredentialsError.message


class TestRefresh:
    def test_rotation_rejects_reuse(self, gateway) -> None:
        _register(gateway)
        original = gateway.login("a@b.com", PASSWORD)

        rotated = gateway.refresh(original.refresh_token)
        assert rotated.refresh_token != original.refresh_token

        with pytest.raises(InvalidRefreshTokenError):
            gateway.refresh(original.refresh_token)
        # The rotated token is still the live one.
        gateway.refresh(rotated.refresh_token)

    def test_expired_refresh_token(self, gateway, clock) -> None:
        _register(gateway)
        pair = gateway.login("a@b.com", PASSWORD)
        clock.advance(days=30)
        with pytest.raises(ExpiredRefreshTokenError):
            gateway.refresh(pair.refresh_token)

    def test_unknown_refresh_token(self, gateway) -> None:
        with pytest.raises(InvalidRefreshTokenError):
            gateway.refresh("never-issued")

    def test_concurrent_rotation_loser_gets_conflict(self, gateway) -> None:
        """Both callers pass the lookup before either writes; only one wins."""
        account = _register(gateway)
        pair = gateway.login("a@b.com", PASSWORD)

        stale = gateway.store.get_by_refresh_token(hash_token(pair.refresh_token))
        winner = gateway.refresh(pair.refresh_token)

        with patch.object(gateway.store, "get_by_refresh_token", return_value=stale):
            with pytest.raises(SessionConflictError):
                gateway.refresh(pair.refresh_token)

        assert gateway.store.get_by_id(account.id).refresh_token == hash_token(winner.refresh_token)

    def test_refresh_picks_up_role_change(self, gateway) -> None:
        account = _register(gateway)
        pair = gateway.login("a@b.com", PASSWORD)
        with gateway.store.engine.begin() as conn:
            conn.exec_driver_sql("UPDATE accounts SET role = 'Admin' WHERE id = ?", (account.id,))

        # The old access token keeps its snapshot; the next mint sees the change.
        assert decode_access_token(pair.access_token)["role"] == Role.USER.value
        refreshed = gateway.refresh(pair.refresh_token)
        assert decode_access_token(refreshed.access_token)["role"] == Role.ADMIN.value


class TestExternalLogin:
    def test_new_subject_creates_one_account_and_one_identity(self, gateway, validator) -> None:
        validator.add("id-token", subject="g-123", email="new@x.com", name="New", picture_url="https://p/x.png")
        first = gateway.external_login("google", "id-token")

        account = gateway.store.get_by_identity("google", "g-123")
        assert account.email == "new@x.com"
        assert account.password_hash is None
        assert account.is_email_verified is True
        assert account.avatar_url == "https://p/x.png"
        assert gateway.store.count_accounts() == 1
        assert gateway.store.count_identities() == 1

        second = gateway.external_login("google", "id-token")
        assert gateway.store.count_accounts() == 1
        assert gateway.store.count_identities() == 1
        assert decode_access_token(second.access_token)["sub"] == str(account.id)
        assert second.refresh_token != first.refresh_token

    def test_links_existing_account_by_email(self, gateway, validator) -> None:
        account = _register(gateway, "ana@x.com")
        validator.add("id-token", subject="g-9", email="ana@x.com")

        pair = gateway.external_login("Google", "id-token")

        assert decode_access_token(pair.access_token)["sub"] == str(account.id)
        assert gateway.store.count_accounts() == 1
        assert [i.provider for i in gateway.store.list_identities(account.id)] == ["google"]
        # Password login keeps working on the linked account.
        gateway.login("ana@x.com", PASSWORD)

    def test_unsupported_provider(self, gateway) -> None:
        with pytest.raises(UnsupportedProviderError):
            gateway.external_login("facebook", "whatever")

    def test_invalid_token(self, gateway) -> None:
        with pytest.raises(InvalidExternalTokenError):
            gateway.external_login("google", "forged")
        assert gateway.store.count_accounts() == 0

    def test_first_login_race_returns_winner(self, gateway, validator) -> None:
        validator.add("id-token", subject="g-1", email="race@x.com")
        winner = Account(email="race@x.com", is_email_verified=True)
        gateway.store.create_account(winner)
        gateway.store.link_identity(winner, "google", "g-1")

        # Simulate losing the race: the first identity lookup misses.
        real_lookup = gateway.store.get_by_identity
        seen = []

        def lookup(provider, subject):
            seen.append(subject)
            return None if len(seen) == 1 else real_lookup(provider, subject)

        with patch.object(gateway.store, "get_by_identity", side_effect=lookup):
            pair = gateway.external_login("google", "id-token")

        assert decode_access_token(pair.access_token)["sub"] == str(winner.id)
        assert gateway.store.count_identities() == 1


class TestPasswordReset:
    def test_forgot_password_message_is_uniform(self, gateway, notifier) -> None:
        _register(gateway)
        assert gateway.forgot_password("a@b.com") == FORGOT_PASSWORD_MESSAGE
        assert gateway.forgot_password("ghost@b.com") == FORGOT_PASSWORD_MESSAGE
        assert [e for e, _ in notifier.resets] == ["a@b.com"]

    def test_reset_sets_password_and_consumes_token(self, gateway, notifier) -> None:
        _register(gateway)
        gateway.forgot_password("a@b.com")
        token = notifier.last_reset("a@b.com")

        gateway.reset_password(token, "N3wPassword!")

        gateway.login("a@b.com", "N3wPassword!")
        with pytest.raises(InvalidCredentialsError):
            gateway.login("a@b.com", PASSWORD)
        with pytest.raises(InvalidResetTokenError):
            gateway.reset_password(token, "Another1!")

    def test_expired_reset_token(self, gateway, notifier, clock) -> None:
        _register(gateway)
        gateway.forgot_password("a@b.com")
        token = notifier.last_reset("a@b.com")

        clock.advance(hours=2)
        with pytest.raises(ExpiredResetTokenError):
            gateway.reset_password(token, "N3wPassword!")

    def test_expired_wins_over_token_correctness(self, gateway, store, clock) -> None:
        """A stored expiry in the past fails as expired even for the exact token."""
        account = _register(gateway)
        store.set_reset_token(account, hash_token("exact"), clock.now.replace(year=2000))
        with pytest.raises(ExpiredResetTokenError):
            gateway.reset_password("exact", "N3wPassword!")

    def test_new_request_supersedes_old_token(self, gateway, notifier) -> None:
        _register(gateway)
        gateway.forgot_password("a@b.com")
        first = notifier.last_reset("a@b.com")
        gateway.forgot_password("a@b.com")

        with pytest.raises(InvalidResetTokenError):
            gateway.reset_password(first, "N3wPassword!")

    def test_reset_revokes_refresh_token(self, gateway, notifier) -> None:
        _register(gateway)
        pair = gateway.login("a@b.com", PASSWORD)
        gateway.forgot_password("a@b.com")
        gateway.reset_password(notifier.last_reset("a@b.com"), "N3wPassword!")

        with pytest.raises(InvalidRefreshTokenError):
            gateway.refresh(pair.refresh_token)


class TestLogoutAndBootstrap:
    def test_logout_invalidates_refresh_token(self, gateway) -> None:
        account = _register(gateway)
        pair = gateway.login("a@b.com", PASSWORD)

        gateway.logout(account.id)

        with pytest.raises(InvalidRefreshTokenError):
            gateway.refresh(pair.refresh_token)
        # Idempotent.
        gateway.logout(account.id)

    def test_bootstrap_admin_once(self, gateway) -> None:
        assert gateway.bootstrap_admin("root@b.com", "R00tpassword") is True
        assert gateway.bootstrap_admin("other@b.com", "R00tpassword") is False

        admin = gateway.store.get_by_email("root@b.com")
        assert admin.role == Role.ADMIN.value
        assert admin.is_email_verified is True
        pair = gateway.login("root@b.com", "R00tpassword")
        assert decode_access_token(pair.access_token)["role"] == Role.ADMIN.value

    def test_bootstrap_skips_taken_email(self, gateway, store) -> None:
        store.create_account(Account(email="root@b.com", password_hash=hash_password("x" * 10)))
        assert gateway.bootstrap_admin("root@b.com", "R00tpassword") is False
        assert store.has_admin() is False
