from __future__ import annotations

import base64
import binascii
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt
import pyotp
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from parcel.errors import LockedOut, Malformed, Unauthenticated
from parcel.logging import AuditLogger, log_event
from parcel.models import LoginAttempt, StoredPassword, User
from parcel.utils.http import client_ip

logger = logging.getLogger("parcel.auth")

TOTP_DIGITS = 6
TOTP_INTERVAL = 30

_timing_placeholder: StoredPassword | None = None


def _placeholder_password() -> StoredPassword:
    global _timing_placeholder
    if _timing_placeholder is None:
        _timing_placeholder = StoredPassword.new("parcel-placeholder-password")
    return _timing_placeholder


@dataclass(frozen=True)
class PendingTotp:
    """Carried between the password and second-factor stages."""

    user_id: uuid.UUID
    username: str


@dataclass(frozen=True)
class SignInResult:
    user: User | None = None
    token: str | None = None
    pending: PendingTotp | None = None

    @property
    def authenticated(self) -> bool:
        return self.user is not None and self.pending is None


@dataclass(frozen=True)
class TotpEnrolment:
    secret: str
    provisioning_uri: str


def decode_totp_secret(secret: str) -> bytes:
    normalized = secret.strip().replace(" ", "").upper()
    padding = "=" * (-len(normalized) % 8)
    try:
        return base64.b32decode(normalized + padding)
    except (binascii.Error, ValueError) as exc:
        raise Malformed("invalid_totp_secret") from exc


class AuthService:
    def __init__(
        self,
        session: Session,
        jwt_secret: str,
        session_ttl_seconds: int = 86400,
        lockout_threshold: int = 10,
        lockout_window_seconds: int = 300,
        trust_proxy: bool = False,
        issuer_name: str = "Parcel",
        audit: AuditLogger | None = None,
    ) -> None:
        self.session = session
        self.jwt_secret = jwt_secret
        self.session_ttl_seconds = session_ttl_seconds
        self.lockout_threshold = lockout_threshold
        self.lockout_window_seconds = lockout_window_seconds
        self.trust_proxy = trust_proxy
        self.issuer_name = issuer_name
        self.audit = audit or AuditLogger(session)

    def is_locked_out(self, username: str, now: datetime | None = None) -> bool:
        moment = now or datetime.now(timezone.utc)
        cutoff = moment - timedelta(seconds=self.lockout_window_seconds)
        stmt = select(func.count(LoginAttempt.id)).where(
            LoginAttempt.username == username,
            LoginAttempt.attempted_at > cutoff,
            LoginAttempt.success.is_(False),
        )
        return (self.session.scalar(stmt) or 0) >= self.lockout_threshold

    def sign_in(
        self,
        username: str,
        password: str,
        peer: str | None = None,
        forwarded_for: str | None = None,
        now: datetime | None = None,
    ) -> SignInResult:
        """First sign-in stage: password check guarded by the lockout window.

        Returns either an authenticated result carrying a session token, or a
        pending second-factor challenge when the account has TOTP enabled.
        """
        moment = now or datetime.now(timezone.utc)
        username = username.strip()
        address = client_ip(self.trust_proxy, peer, forwarded_for)
        if self.is_locked_out(username, moment):
            log_event("auth", "sign_in", "locked_out", metadata={"username": username, "ip": address})
            raise LockedOut("Too many failed attempts, please try again later")

        user = self.session.scalars(select(User).where(User.username == username)).first()
        if user is None:
            _placeholder_password().verify(password)
            self._record(username, False, moment, address)
            raise Unauthenticated("invalid_credentials")
        if not user.password.verify(password):
            self._record(username, False, moment, address)
            raise Unauthenticated("invalid_credentials")
        if not user.enabled:
            log_event("auth", "sign_in", "disabled", metadata={"username": username})
            raise Unauthenticated("Your account is disabled")

        if user.password.needs_migration():
            user.password = StoredPassword.new(password)
            self.session.commit()
            logger.info("Migrated password hash for user %s", user.id)

        if user.has_totp:
            return SignInResult(user=user, pending=PendingTotp(user_id=user.id, username=username))
        return self._complete(user, moment, address)

    def verify_totp(
        self,
        pending: PendingTotp,
        code: str,
        peer: str | None = None,
        forwarded_for: str | None = None,
        now: datetime | None = None,
    ) -> SignInResult:
        moment = now or datetime.now(timezone.utc)
        address = client_ip(self.trust_proxy, peer, forwarded_for)
        if self.is_locked_out(pending.username, moment):
            log_event("auth", "totp", "locked_out", metadata={"username": pending.username, "ip": address})
            raise LockedOut("Too many failed attempts, please try again later")

        user = self.session.get(User, pending.user_id)
        if user is None or not user.enabled or not user.totp_secret:
            raise Unauthenticated("invalid_session")

        if not self.check_totp(user.totp_secret, code, moment):
            self._record(pending.username, False, moment, address)
            raise Unauthenticated("invalid_code")
        return self._complete(user, moment, address)

    def check_totp(self, secret: str, code: str, now: datetime | None = None) -> bool:
        candidate = code.strip()
        if not (candidate.isascii() and candidate.isdigit()):
            return False
        if len(candidate) != TOTP_DIGITS:
            return False
        decode_totp_secret(secret)
        moment = now or datetime.now(timezone.utc)
        totp = pyotp.TOTP(secret.strip().replace(" ", "").upper(), digits=TOTP_DIGITS, interval=TOTP_INTERVAL)
        return totp.verify(candidate, for_time=moment, valid_window=0)

    def enrol_totp(self, user: User) -> TotpEnrolment:
        secret = pyotp.random_base32()
        uri = pyotp.TOTP(secret).provisioning_uri(name=user.username, issuer_name=self.issuer_name)
        return TotpEnrolment(secret=secret, provisioning_uri=uri)

    def confirm_totp(self, user: User, secret: str, code: str, now: datetime | None = None) -> None:
        if not self.check_totp(secret, code, now):
            raise Unauthenticated("invalid_code")
        user.totp_secret = secret
        self.session.commit()

    def disable_totp(self, user: User) -> None:
        user.totp_secret = None
        self.session.commit()

    def issue_token(self, user: User, now: datetime | None = None) -> str:
        moment = now or datetime.now(timezone.utc)
        exp = moment + timedelta(seconds=self.session_ttl_seconds)
        payload = {"sub": str(user.id), "admin": bool(user.admin), "exp": exp, "iat": moment}
        return jwt.encode(payload, self.jwt_secret, algorithm="HS256")

    def verify_token(self, token: str) -> dict:
        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=["HS256"])
        except jwt.ExpiredSignatureError as exc:
            raise Unauthenticated("token_expired") from exc
        except jwt.InvalidTokenError as exc:
            raise Unauthenticated("invalid_token") from exc
        return payload

    def current_user(self, token: str, now: datetime | None = None) -> User:
        payload = self.verify_token(token)
        try:
            user_id = uuid.UUID(str(payload.get("sub")))
        except ValueError as exc:
            raise Unauthenticated("invalid_token") from exc
        user = self.session.get(User, user_id)
        if user is None or not user.enabled:
            raise Unauthenticated("invalid_token")
        user.last_access = now or datetime.now(timezone.utc)
        self.session.commit()
        return user

    def _complete(self, user: User, moment: datetime, address: str | None) -> SignInResult:
        self._record(user.username, True, moment, address)
        user.last_access = moment
        self.session.commit()
        log_event("auth", "sign_in", "success", metadata={"user_id": user.id, "ip": address})
        return SignInResult(user=user, token=self.issue_token(user, moment))

    def _record(self, username: str, success: bool, moment: datetime, address: str | None) -> None:
        self.audit.record_login_attempt(username, success, moment, address)
