from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

import pyotp
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from parcel.auth import AuthService, PendingTotp
from parcel.errors import LockedOut, Malformed, Unauthenticated
from parcel.models import Base, LoginAttempt, PasswordScheme, StoredPassword
from parcel.services import UserService

T0 = datetime(2026, 4, 1, 9, 0, tzinfo=timezone.utc)


class AuthSecurityTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session = Session(self.engine)
        self.users = UserService(self.session)
        self.service = AuthService(self.session, jwt_secret="secret", session_ttl_seconds=60)
        self.alice = self.users.create("alice", "Alice", "Password1!")

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def _attempts(self, success: bool) -> int:
        return self.session.query(LoginAttempt).filter_by(username="alice", success=success).count()

    def test_password_sign_in_issues_token(self) -> None:
        result = self.service.sign_in("alice", "Password1!", peer="10.0.0.2", now=T0)
        self.assertTrue(result.authenticated)
        self.assertIsNotNone(result.token)
        payload = self.service.verify_token(result.token)
        self.assertEqual(payload["sub"], str(self.alice.id))
        self.assertEqual(self._attempts(True), 1)
        attempt = self.session.query(LoginAttempt).one()
        self.assertEqual(attempt.ip_address, "10.0.0.2")

    def test_wrong_password_records_failure(self) -> None:
        with self.assertRaises(Unauthenticated):
            self.service.sign_in("alice", "nope", now=T0)
        self.assertEqual(self._attempts(False), 1)

    def test_unknown_user_records_failure(self) -> None:
        with self.assertRaises(Unauthenticated):
            self.service.sign_in("mallory", "whatever", now=T0)
        self.assertEqual(self.session.query(LoginAttempt).filter_by(username="mallory").count(), 1)

    def test_disabled_user_is_refused(self) -> None:
        self.users.set_enabled(self.alice.id, False)
        with self.assertRaises(Unauthenticated) as ctx:
            self.service.sign_in("alice", "Password1!", now=T0)
        self.assertEqual(ctx.exception.message, "Your account is disabled")

    def test_legacy_hash_is_upgraded_once(self) -> None:
        self.users.set_password(self.alice.id, StoredPassword.legacy("Password1!"))
        self.assertTrue(self.users.require(self.alice.id).password.needs_migration())

        self.service.sign_in("alice", "Password1!", now=T0)
        upgraded = self.users.require(self.alice.id).password
        self.assertIs(upgraded.scheme, PasswordScheme.CURRENT)
        self.assertTrue(upgraded.verify("Password1!"))

        self.service.sign_in("alice", "Password1!", now=T0 + timedelta(seconds=1))
        self.assertEqual(self.users.require(self.alice.id).password.encoded, upgraded.encoded)

    def test_lockout_after_threshold(self) -> None:
        for offset in range(10):
            with self.assertRaises(Unauthenticated):
                self.service.sign_in("alice", "bad", now=T0 + timedelta(seconds=offset))
        self.assertTrue(self.service.is_locked_out("alice", T0 + timedelta(seconds=10)))
        with self.assertRaises(LockedOut):
            self.service.sign_in("alice", "Password1!", now=T0 + timedelta(seconds=10))
        result = self.service.sign_in("alice", "Password1!", now=T0 + timedelta(seconds=9 + 301))
        self.assertTrue(result.authenticated)

    def test_lockout_is_per_username(self) -> None:
        self.users.create("bob", "Bob", "Password2!")
        for offset in range(10):
            with self.assertRaises(Unauthenticated):
                self.service.sign_in("alice", "bad", now=T0 + timedelta(seconds=offset))
        result = self.service.sign_in("bob", "Password2!", now=T0 + timedelta(seconds=11))
        self.assertTrue(result.authenticated)

    def test_locked_out_attempt_skips_password_check(self) -> None:
        for offset in range(10):
            with self.assertRaises(Unauthenticated):
                self.service.sign_in("alice", "bad", now=T0 + timedelta(seconds=offset))
        with self.assertRaises(LockedOut):
            self.service.sign_in("alice", "bad", now=T0 + timedelta(seconds=12))
        self.assertEqual(self._attempts(False), 10)

    def test_token_expiry(self) -> None:
        token = self.service.issue_token(self.alice, datetime.now(timezone.utc) - timedelta(seconds=120))
        with self.assertRaises(Unauthenticated) as ctx:
            self.service.verify_token(token)
        self.assertEqual(ctx.exception.message, "token_expired")
        with self.assertRaises(Unauthenticated):
            self.service.verify_token("not-a-token")

    def test_current_user_resolves_token(self) -> None:
        token = self.service.issue_token(self.alice)
        user = self.service.current_user(token)
        self.assertEqual(user.id, self.alice.id)
        self.assertIsNotNone(user.last_access)

    def test_forwarded_ip_only_when_trusted(self) -> None:
        trusting = AuthService(self.session, jwt_secret="secret", trust_proxy=True)
        trusting.sign_in("alice", "Password1!", peer="10.0.0.2", forwarded_for="203.0.113.7", now=T0)
        self.service.sign_in("alice", "Password1!", peer="10.0.0.2", forwarded_for="203.0.113.7", now=T0)
        addresses = sorted(row.ip_address for row in self.session.query(LoginAttempt).all())
        self.assertEqual(addresses, ["10.0.0.2", "203.0.113.7"])


class TotpFlowTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session = Session(self.engine)
        self.users = UserService(self.session)
        self.service = AuthService(self.session, jwt_secret="secret")
        self.alice = self.users.create("alice", "Alice", "Password1!")
        self.secret = pyotp.random_base32()
        self.users.set_totp_secret(self.alice.id, self.secret)

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def test_password_then_code(self) -> None:
        result = self.service.sign_in("alice", "Password1!", now=T0)
        self.assertFalse(result.authenticated)
        self.assertEqual(result.pending, PendingTotp(self.alice.id, "alice"))
        self.assertEqual(self.session.query(LoginAttempt).count(), 0)

        code = pyotp.TOTP(self.secret).at(T0)
        final = self.service.verify_totp(result.pending, f" {code} ", now=T0)
        self.assertTrue(final.authenticated)
        self.assertIsNotNone(final.token)

    def test_rejects_malformed_codes(self) -> None:
        pending = self.service.sign_in("alice", "Password1!", now=T0).pending
        for code in ("12ab56", "12345", "1234567"):
            with self.assertRaises(Unauthenticated):
                self.service.verify_totp(pending, code, now=T0)

    def test_non_ascii_digits_are_rejected_and_counted(self) -> None:
        pending = self.service.sign_in("alice", "Password1!", now=T0).pending
        for code in ("١٢٣٤٥٦", "²" * 6):
            with self.assertRaises(Unauthenticated):
                self.service.verify_totp(pending, code, now=T0)
        failures = self.session.query(LoginAttempt).filter_by(username="alice", success=False).count()
        self.assertEqual(failures, 2)

    def test_totp_failures_share_lockout_counter(self) -> None:
        for offset in range(5):
            with self.assertRaises(Unauthenticated):
                self.service.sign_in("alice", "bad", now=T0 + timedelta(seconds=offset))
        pending = self.service.sign_in("alice", "Password1!", now=T0 + timedelta(seconds=5)).pending
        for offset in range(5):
            with self.assertRaises(Unauthenticated):
                self.service.verify_totp(pending, "000000" if offset % 2 else "999999", now=T0 + timedelta(seconds=6))
        code = pyotp.TOTP(self.secret).at(T0 + timedelta(seconds=7))
        with self.assertRaises(LockedOut):
            self.service.verify_totp(pending, code, now=T0 + timedelta(seconds=7))

    def test_bad_secret_is_malformed(self) -> None:
        with self.assertRaises(Malformed):
            self.service.check_totp("not base32!!", "123456", T0)

    def test_enrol_and_confirm(self) -> None:
        bob = self.users.create("bob", "Bob", "pw")
        enrolment = self.service.enrol_totp(bob)
        self.assertIn("otpauth://", enrolment.provisioning_uri)
        with self.assertRaises(Unauthenticated):
            self.service.confirm_totp(bob, enrolment.secret, "abcdef", T0)
        self.service.confirm_totp(bob, enrolment.secret, pyotp.TOTP(enrolment.secret).at(T0), T0)
        self.assertEqual(self.users.require(bob.id).totp_secret, enrolment.secret)
        self.service.disable_totp(bob)
        self.assertFalse(self.users.require(bob.id).has_totp)


if __name__ == "__main__":
    unittest.main()
