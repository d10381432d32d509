"""
auth/gateway.py -- Orchestration of every authentication flow.

AuthGateway composes the token helpers (auth/tokens.py), the account store
(auth/store.py), the external identity resolver (auth/external.py) and a
notifier (auth/notifier.py). Each public method is one flow; flows share no
in-memory state. All mutable session state lives in the account row, and the
store's version compare-and-swap is the only synchronization point.

Refresh rotation is the whole protocol:
  1. Look up the account whose stored refresh digest equals digest(presented).
     None -> InvalidRefreshTokenError. That covers a token already rotated away.
  2. Stored expiry <= now -> ExpiredRefreshTokenError.
  3. Mint a new pair and replace the stored digest, conditioned on the version
     read in step 1. A concurrent refresh that wrote first makes this raise
     SessionConflictError, so no token is honoured by two successful refreshes.

Anti-enumeration: forgot_password() and resend_verification() return the same
message whether or not the email is registered, and notifier or conflict
failures in those flows are logged without changing the response.

Layer rule: no imports from api/ or client/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth.errors import (
    EmailInUseError,
    ExpiredRefreshTokenError,
    ExpiredResetTokenError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidResetTokenError,
    InvalidVerificationTokenError,
    SessionConflictError,
)
from auth.external import ExternalIdentityResolver
from auth.models import Account, ExternalIdentity, ExternalUserInfo, Role, TokenPair
from auth.notifier import Notifier
from auth.store import AccountStore
from auth.tokens import (
    access_token_lifetime,
    authenticate_account,
    create_access_token,
    generate_one_time_token,
    generate_refresh_token,
    hash_password,
    hash_token,
)
from core.config import Settings, get_settings

logger = logging.getLogger("sessionkeep.auth")

REGISTERED_MESSAGE = "Account created. Check your email to verify your address."
FORGOT_PASSWORD_MESSAGE = "If an account exists for that email, a password reset link has been sent."
RESEND_VERIFICATION_MESSAGE = "If that email address still needs verification, a new link has been sent."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthGateway:
    """Entry point for Register, Login, ExternalLogin, Refresh and the token flows.

    Args:
        store:    Account persistence.
        resolver: Provider-keyed external identity validators.
        notifier: Delivers verification and reset links.
        settings: Token lifetimes. Defaults to get_settings().
        clock:    Returns the current aware UTC datetime. Tests inject a fixed
                  clock to exercise expiry without sleeping.
    """

    def __init__(
        self,
        store: AccountStore,
        resolver: ExternalIdentityResolver,
        notifier: Notifier,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        settings = settings or get_settings()
        self.store = store
        self.resolver = resolver
        self.notifier = notifier
        self._clock = clock
        self._refresh_lifetime = timedelta(days=settings.refresh_token_expire_days)
        self._reset_lifetime = timedelta(minutes=settings.reset_token_expire_minutes)

    # ------------------------------------------------------------------
    # Registration and email verification
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, full_name: str = "", phone_number: str = "") -> str:
        """Create a password account with role User and send a verification link.

        Returns a confirmation message. The verification token is only ever
        handed to the notifier, never to the caller.
        """
        if self.store.get_by_email(email) is not None:
            raise EmailInUseError()

        raw_token = generate_one_time_token()
        account = Account(
            email=email.strip().lower(),
            password_hash=hash_password(password),
            role=Role.USER.value,
            full_name=full_name,
            phone_number=phone_number,
            email_verification_token=hash_token(raw_token),
        )
        try:
            self.store.create_account(account)
        except IntegrityError as exc:
            # Concurrent registration for the same email won the insert
            raise EmailInUseError() from exc

        logger.info("Account %d registered", account.id)
        if not self.notifier.send_verification(account.email, raw_token):
            logger.warning("Verification mail for account %d was not delivered", account.id)
        return REGISTERED_MESSAGE

    def verify_email(self, token: str) -> None:
        """Consume a verification token and mark the account verified."""
        account = self.store.get_by_verification_token(hash_token(token))
        if account is None:
            raise InvalidVerificationTokenError()
        self.store.mark_verified(account)
        logger.info("Email verified for account %d", account.id)

    def resend_verification(self, email: str) -> str:
        """Issue a fresh verification token, superseding the previous one."""
        account = self.store.get_by_email(email)
        if account is not None and not account.is_email_verified:
            raw_token = generate_one_time_token()
            try:
                self.store.set_verification_token(account, hash_token(raw_token))
            except SessionConflictError:
                logger.warning("Verification resend for account %d lost a concurrent update", account.id)
            else:
                if not self.notifier.send_verification(account.email, raw_token):
                    logger.warning("Verification mail for account %d was not delivered", account.id)
        return RESEND_VERIFICATION_MESSAGE

    # ------------------------------------------------------------------
    # Sign-in flows
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> TokenPair:
        """Password login. Unknown email, external-only account and wrong
        password all fail the same way [C1]."""
        account = authenticate_account(self.store, email, password)
        if account is None:
            raise InvalidCredentialsError()
        pair = self._issue(account)
        logger.info("Password login for account %d", account.id)
        return pair

    def external_login(self, provider: str, id_token: str) -> TokenPair:
        """Sign in with a third-party ID token.

        Flow:
          1. Validate the assertion (UnsupportedProviderError /
             InvalidExternalTokenError on failure).
          2. Identity already linked -> use its account.
          3. Else an account with the same email exists -> link the identity.
          4. Else create a verified, password-less account with the identity.
          5. Mint a pair and rotate the refresh token.
        """
        info = self.resolver.resolve(provider, id_token)
        provider_key = provider.lower()

        account = self.store.get_by_identity(provider_key, info.subject)
        if account is None:
            account = self._link_or_create(provider_key, info)

        pair = self._issue(account)
        logger.info("External login (%s) for account %d", provider_key, account.id)
        return pair

    def refresh(self, presented_token: str) -> TokenPair:
        """Exchange a live refresh token for a new pair, rotating the stored token."""
        account = self.store.get_by_refresh_token(hash_token(presented_token))
        if account is None:
            raise InvalidRefreshTokenError()
        now = self._clock()
        if account.refresh_token_expires_at is None or account.refresh_token_expires_at <= now:
            raise ExpiredRefreshTokenError()
        pair = self._issue(account, now)
        logger.info("Refresh token rotated for account %d", account.id)
        return pair

    def logout(self, account_id: int) -> None:
        """Drop the account's live refresh token.

        The access token the caller holds stays valid until its short expiry;
        there is no access-token deny list.
        """
        for _ in range(2):
            account = self.store.get_by_id(account_id)
            if account is None or account.refresh_token is None:
                return
            try:
                self.store.clear_refresh_token(account)
            except SessionConflictError:
                # A refresh rotated the token between read and write; the
                # re-read picks up the new version and clears that one.
                continue
            logger.info("Logout for account %d", account_id)
            return
        raise SessionConflictError()

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def forgot_password(self, email: str) -> str:
        """Start a password reset. The response never reveals whether the
        email is registered."""
        account = self.store.get_by_email(email)
        if account is not None:
            raw_token = generate_one_time_token()
            try:
                self.store.set_reset_token(account, hash_token(raw_token), self._clock() + self._reset_lifetime)
            except SessionConflictError:
                logger.warning("Password reset for account %d lost a concurrent update", account.id)
            else:
                if not self.notifier.send_password_reset(account.email, raw_token):
                    logger.warning("Reset mail for account %d was not delivered", account.id)
        return FORGOT_PASSWORD_MESSAGE

    def reset_password(self, token: str, new_password: str) -> None:
        """Consume a reset token and store the new password.

        The expiry check runs only after an exact token match, so an expired
        token fails with ExpiredResetTokenError and an unknown one with
        InvalidResetTokenError.
        """
        account = self.store.get_by_reset_token(hash_token(token))
        if account is None:
            raise InvalidResetTokenError()
        expires_at = account.password_reset_token_expires_at
        if expires_at is None or expires_at <= self._clock():
            raise ExpiredResetTokenError()
        self.store.reset_password(account, hash_password(new_password))
        logger.info("Password reset for account %d", account.id)

    # ------------------------------------------------------------------
    # Startup seeding
    # ------------------------------------------------------------------

    def bootstrap_admin(self, email: str, password: str) -> bool:
        """Create the first Admin account. Returns True if one was created."""
        if self.store.has_admin():
            return False
        if self.store.get_by_email(email) is not None:
            logger.warning("Admin bootstrap skipped: email already belongs to a non-admin account")
            return False
        admin = Account(
            email=email.strip().lower(),
            password_hash=hash_password(password),
            role=Role.ADMIN.value,
            full_name="System Administrator",
            is_email_verified=True,
        )
        try:
            self.store.create_account(admin)
        except IntegrityError:
            logger.info("Admin bootstrap raced another worker; keeping the existing account")
            return False
        logger.info("Admin account %d created", admin.id)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _issue(self, account: Account, now: datetime | None = None) -> TokenPair:
        """Mint an access + refresh pair and make the refresh token the live one."""
        now = now or self._clock()
        access_token = create_access_token(account, now)
        refresh_token = generate_refresh_token()
        self.store.set_refresh_token(account, hash_token(refresh_token), now + self._refresh_lifetime)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(access_token_lifetime().total_seconds()),
        )

    def _link_or_create(self, provider: str, info: ExternalUserInfo) -> Account:
        account = self.store.get_by_email(info.email)
        try:
            if account is not None:
                self.store.link_identity(account, provider, info.subject)
                if not account.avatar_url and info.picture_url:
                    self.store.set_avatar_url(account, info.picture_url)
                logger.info("Linked %s identity to existing account %d", provider, account.id)
                return account

            account = Account(
                email=info.email,
                full_name=info.name,
                avatar_url=info.picture_url,
                is_email_verified=True,  # the provider already verified it [H1]
            )
            self.store.create_account(account, ExternalIdentity(provider=provider, provider_subject_id=info.subject))
            logger.info("Created account %d from %s identity", account.id, provider)
            return account
        except IntegrityError:
            # A concurrent first login for the same subject won the insert.
            winner = self.store.get_by_identity(provider, info.subject)
            if winner is not None:
                return winner
            # Otherwise the email was taken concurrently (e.g. by registration).
            existing = self.store.get_by_email(info.email)
            if existing is None:
                raise
            self.store.link_identity(existing, provider, info.subject)
            return existing
