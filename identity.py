"""Identity provider: accounts, credentials, and the email verification gate.

Errors are raised as :class:`AuthError` carrying a provider error code such
as ``"wrong-password"``; :func:`auth_error_message` turns a code into the
text shown to the user for a given operation.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import bcrypt
from email_validator import EmailNotValidError, validate_email
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionFactory, SessionLocal, session_scope
from models import Account, FederatedIdentity
from tokens import (
    RESET_PASSWORD_SALT,
    VERIFY_EMAIL_SALT,
    issue_session_token,
    issue_token,
    read_session_token,
    read_token,
)

logger = logging.getLogger(__name__)

PASSWORD_PROVIDER = "password"


class AuthError(Exception):
    def __init__(self, code: str) -> None:
        super().__init__(code)
        self.code = code


AUTH_ERROR_MESSAGES: dict[str, dict[str, str]] = {
    "login": {
        "user-not-found": "No account uses this email. Try registering first.",
        "wrong-password": "The password you entered is wrong. Try again.",
        "invalid-email": "The email address is not valid.",
        "too-many-requests": (
            "Too many sign-in attempts. Try again later or reset your password."
        ),
        "popup-closed-by-user": "The sign-in popup was closed before finishing.",
        "cancelled-popup-request": "Another sign-in is already in progress.",
        "account-exists-with-different-credential": (
            "This account is registered with a different sign-in method."
        ),
        "email-not-verified": "Verify your email address before signing in.",
    },
    "register": {
        "email-already-in-use": "Registration failed. The email may already be used.",
        "invalid-email": "The email address is not valid.",
        "weak-password": "The password is too short.",
        "account-exists-with-different-credential": (
            "This account is registered with a different sign-in method."
        ),
    },
    "reset": {
        "user-not-found": "No account uses this email.",
        "invalid-email": "The email address is not valid.",
        "invalid-action-code": "The reset link is invalid or has expired.",
        "weak-password": "The password is too short.",
    },
    "verify": {
        "invalid-action-code": "The verification link is invalid or has expired.",
    },
    "password": {
        "wrong-password": "The current password is wrong.",
        "requires-recent-login": "Sign in again before changing your password.",
        "weak-password": "The password is too short.",
    },
    "link": {
        "credential-already-in-use": (
            "That account is already linked to another user."
        ),
        "account-exists-with-different-credential": (
            "That account is already linked to another user."
        ),
        "provider-already-linked": "That provider is already linked.",
        "no-such-provider": "That provider is not linked.",
        "last-provider": "Link another sign-in method before removing this one.",
    },
    "profile": {
        "user-not-found": "Your account could not be found. Sign in again.",
    },
}

GENERIC_AUTH_MESSAGES: dict[str, str] = {
    "login": "Sign-in failed. Check your email and password.",
    "register": "Registration failed.",
    "reset": "Could not send the password reset email. Try again later.",
    "verify": "Email verification failed.",
    "password": "Could not change the password.",
    "link": "Could not update linked accounts.",
    "profile": "Could not update your profile.",
}


def auth_error_message(code: str, operation: str = "login") -> str:
    messages = AUTH_ERROR_MESSAGES.get(operation, {})
    if code in messages:
        return messages[code]
    return GENERIC_AUTH_MESSAGES.get(operation, "Authentication failed.")


@dataclass(frozen=True)
class Principal:
    uid: str
    email: str
    display_name: Optional[str]
    email_verified: bool
    provider_ids: tuple[str, ...] = ()

    @property
    def provider_id(self) -> str:
        return self.provider_ids[0] if self.provider_ids else ""


MailSender = Callable[[str, str, str], None]


def log_mail(to: str, subject: str, token: str) -> None:
    logger.info(f"mail_outbox: to={to} subject={subject!r} token={token}")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def normalize_email(email: str) -> str:
    try:
        result = validate_email(email.strip(), check_deliverability=False)
    except EmailNotValidError as exc:
        raise AuthError("invalid-email") from exc
    return result.normalized.lower()


class IdentityProvider:
    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        send_mail: MailSender = log_mail,
        now: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.send_mail = send_mail
        self.now = now
        self.settings = get_settings()

    def _account(self, session: Session, uid: str) -> Account:
        account = session.get(Account, uid)
        if account is None:
            raise AuthError("user-not-found")
        return account

    def _account_by_email(self, session: Session, email: str) -> Optional[Account]:
        return session.scalar(select(Account).where(Account.email == email))

    @staticmethod
    def _principal(account: Account) -> Principal:
        providers: list[str] = []
        if account.password_hash:
            providers.append(PASSWORD_PROVIDER)
        providers.extend(identity.provider_id for identity in account.identities)
        return Principal(
            uid=account.uid,
            email=account.email,
            display_name=account.display_name,
            email_verified=account.email_verified,
            provider_ids=tuple(providers),
        )

    def _check_password_strength(self, password: str) -> None:
        if len(password) < self.settings.min_password_length:
            raise AuthError("weak-password")

    def get_principal(self, uid: str) -> Optional[Principal]:
        with session_scope(self.session_factory) as session:
            account = session.get(Account, uid)
            return self._principal(account) if account else None

    def create_user(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> Principal:
        email = normalize_email(email)
        self._check_password_strength(password)
        with session_scope(self.session_factory) as session:
            if self._account_by_email(session, email) is not None:
                raise AuthError("email-already-in-use")
            account = Account(
                uid=uuid.uuid4().hex,
                email=email,
                display_name=display_name,
                password_hash=hash_password(password),
                email_verified=False,
                last_sign_in_at=self.now(),
            )
            session.add(account)
            session.flush()
            principal = self._principal(account)
        logger.info(f"account_created: uid={principal.uid} provider=password")
        self.send_email_verification(principal.uid)
        return principal

    def send_email_verification(self, uid: str) -> None:
        principal = self.get_principal(uid)
        if principal is None:
            raise AuthError("user-not-found")
        token = issue_token(uid, VERIFY_EMAIL_SALT)
        self.send_mail(principal.email, "Verify your email", token)

    def verify_email(self, token: str) -> Principal:
        payload = read_token(
            token, VERIFY_EMAIL_SALT, self.settings.verification_max_age_hours
        )
        if payload is None:
            raise AuthError("invalid-action-code")
        uid, _issued_at = payload
        with session_scope(self.session_factory) as session:
            account = session.get(Account, uid)
            if account is None:
                raise AuthError("invalid-action-code")
            account.email_verified = True
            principal = self._principal(account)
        logger.info(f"email_verified: uid={uid}")
        return principal

    def sign_in_with_password(self, email: str, password: str) -> Principal:
        email = normalize_email(email)
        now = self.now()
        with session_scope(self.session_factory) as session:
            account = self._account_by_email(session, email)
            if account is None:
                raise AuthError("user-not-found")
            if account.locked_until is not None and account.locked_until > now:
                raise AuthError("too-many-requests")
            if account.password_hash and verify_password(
                password, account.password_hash
            ):
                account.failed_logins = 0
                account.locked_until = None
                account.last_sign_in_at = now
                principal = self._principal(account)
            else:
                principal = None
                account.failed_logins += 1
                locked = account.failed_logins >= self.settings.max_failed_logins
                if locked:
                    account.failed_logins = 0
                    account.locked_until = now + timedelta(
                        minutes=self.settings.lockout_minutes
                    )
        if principal is None:
            logger.info(f"sign_in_failed: email={email} locked={locked}")
            raise AuthError("too-many-requests" if locked else "wrong-password")
        logger.info(f"sign_in: uid={principal.uid} provider=password")
        return principal

    def sign_in_with_federated(
        self,
        provider_id: str,
        subject: str,
        email: str,
        display_name: Optional[str] = None,
    ) -> Principal:
        """Sign in with an identity asserted by an upstream provider.

        The assertion is trusted as-is, so the email counts as verified. A
        first sign-in creates the account.
        """
        email = normalize_email(email)
        now = self.now()
        with session_scope(self.session_factory) as session:
            identity = session.scalar(
                select(FederatedIdentity).where(
                    FederatedIdentity.provider_id == provider_id,
                    FederatedIdentity.subject == subject,
                )
            )
            if identity is not None:
                account = identity.account
            else:
                if self._account_by_email(session, email) is not None:
                    raise AuthError("account-exists-with-different-credential")
                account = Account(
                    uid=uuid.uuid4().hex,
                    email=email,
                    display_name=display_name,
                    email_verified=True,
                )
                account.identities.append(
                    FederatedIdentity(provider_id=provider_id, subject=subject)
                )
                session.add(account)
                logger.info(f"account_created: uid={account.uid} provider={provider_id}")
            account.last_sign_in_at = now
            session.flush()
            principal = self._principal(account)
        logger.info(f"sign_in: uid={principal.uid} provider={provider_id}")
        return principal

    def send_password_reset(self, email: str) -> None:
        email = normalize_email(email)
        with session_scope(self.session_factory) as session:
            account = self._account_by_email(session, email)
            if account is None:
                raise AuthError("user-not-found")
            uid = account.uid
        token = issue_token(uid, RESET_PASSWORD_SALT)
        self.send_mail(email, "Reset your password", token)
        logger.info(f"password_reset_requested: uid={uid}")

    def confirm_password_reset(self, token: str, new_password: str) -> None:
        payload = read_token(
            token, RESET_PASSWORD_SALT, self.settings.reset_max_age_hours
        )
        if payload is None:
            raise AuthError("invalid-action-code")
        self._check_password_strength(new_password)
        uid, _issued_at = payload
        with session_scope(self.session_factory) as session:
            account = session.get(Account, uid)
            if account is None:
                raise AuthError("invalid-action-code")
            account.password_hash = hash_password(new_password)
            account.failed_logins = 0
            account.locked_until = None
        logger.info(f"password_reset: uid={uid}")

    def reauthenticate(self, uid: str, password: str) -> Principal:
        with session_scope(self.session_factory) as session:
            account = self._account(session, uid)
            if not account.password_hash or not verify_password(
                password, account.password_hash
            ):
                raise AuthError("wrong-password")
            account.last_sign_in_at = self.now()
            return self._principal(account)

    def update_password(self, uid: str, new_password: str) -> None:
        self._check_password_strength(new_password)
        window = timedelta(minutes=self.settings.recent_login_minutes)
        with session_scope(self.session_factory) as session:
            account = self._account(session, uid)
            last = account.last_sign_in_at
            if last is None or self.now() - last > window:
                raise AuthError("requires-recent-login")
            account.password_hash = hash_password(new_password)
        logger.info(f"password_changed: uid={uid}")

    def update_profile(self, uid: str, display_name: str) -> Principal:
        with session_scope(self.session_factory) as session:
            account = self._account(session, uid)
            account.display_name = display_name
            return self._principal(account)

    def link_provider(self, uid: str, provider_id: str, subject: str) -> Principal:
        with session_scope(self.session_factory) as session:
            account = self._account(session, uid)
            owner = session.scalar(
                select(FederatedIdentity).where(
                    FederatedIdentity.provider_id == provider_id,
                    FederatedIdentity.subject == subject,
                )
            )
            if owner is not None and owner.uid != uid:
                raise AuthError("credential-already-in-use")
            if any(i.provider_id == provider_id for i in account.identities):
                raise AuthError("provider-already-linked")
            account.identities.append(
                FederatedIdentity(provider_id=provider_id, subject=subject)
            )
            session.flush()
            principal = self._principal(account)
        logger.info(f"provider_linked: uid={uid} provider={provider_id}")
        return principal

    def unlink_provider(self, uid: str, provider_id: str) -> Principal:
        with session_scope(self.session_factory) as session:
            account = self._account(session, uid)
            providers = self._principal(account).provider_ids
            if provider_id not in providers:
                raise AuthError("no-such-provider")
            if len(providers) == 1:
                raise AuthError("last-provider")
            if provider_id == PASSWORD_PROVIDER:
                account.password_hash = None
            else:
                identity = next(
                    i for i in account.identities if i.provider_id == provider_id
                )
                account.identities.remove(identity)
            session.flush()
            principal = self._principal(account)
        logger.info(f"provider_unlinked: uid={uid} provider={provider_id}")
        return principal

    def sign_out(self, uid: str) -> None:
        with session_scope(self.session_factory) as session:
            account = session.get(Account, uid)
            if account is None:
                return
            # session tokens carry whole-second timestamps
            account.sessions_revoked_at = self.now().replace(microsecond=0)
        logger.info(f"sign_out: uid={uid}")

    def issue_session(self, principal: Principal) -> str:
        return issue_session_token(principal.uid)

    def principal_from_session(self, token: Optional[str]) -> Optional[Principal]:
        if not token:
            return None
        payload = read_session_token(token)
        if payload is None:
            return None
        uid, issued_at = payload
        with session_scope(self.session_factory) as session:
            account = session.get(Account, uid)
            if account is None:
                return None
            revoked = account.sessions_revoked_at
            if revoked is not None and issued_at < revoked:
                return None
            return self._principal(account)
