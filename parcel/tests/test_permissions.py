from __future__ import annotations

import unittest
from datetime import date

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from parcel.errors import Forbidden, Unauthenticated
from parcel.models import Base, StoredPassword, TeamMember, Upload, UploadOwner, User, new_key
from parcel.services import DELETE, EDIT, RESET_DOWNLOADS, SHARE, TRANSFER, VIEW, Action, PermissionService, decide

TODAY = date(2026, 6, 1)


def make_user(admin: bool = False) -> User:
    return User(id=new_key(), username=f"user{new_key().hex[:6]}", name="U", admin=admin)


def make_upload(owner: UploadOwner, **fields) -> Upload:
    upload = Upload(id=new_key(), slug="slug", filename="f.txt", size=1, downloads=0, **fields)
    upload.owner = owner
    return upload


class DecisionTableTests(unittest.TestCase):
    def setUp(self) -> None:
        self.alice = make_user()
        self.bob = make_user()
        self.admin = make_user(admin=True)
        self.team_id = new_key()

    def test_admin_always_allowed(self) -> None:
        upload = make_upload(UploadOwner.user(self.alice.id))
        for action in (VIEW, Action.download(), SHARE, RESET_DOWNLOADS, EDIT, TRANSFER, DELETE):
            self.assertTrue(decide(upload, self.admin, action, {}, TODAY))

    def test_view_public_or_owner(self) -> None:
        private = make_upload(UploadOwner.user(self.alice.id), public=False)
        public = make_upload(UploadOwner.user(self.alice.id), public=True)
        self.assertTrue(decide(private, self.alice, VIEW, {}, TODAY))
        self.assertFalse(decide(private, self.bob, VIEW, {}, TODAY))
        self.assertFalse(decide(private, None, VIEW, {}, TODAY))
        self.assertTrue(decide(public, None, VIEW, {}, TODAY))

    def test_public_download_preconditions(self) -> None:
        owner = UploadOwner.user(self.alice.id)
        fresh = make_upload(owner, public=True, remaining=1, expiry_date=TODAY)
        exhausted = make_upload(owner, public=True, limit=3, remaining=0)
        expired = make_upload(owner, public=True, expiry_date=date(2026, 5, 31))
        self.assertTrue(decide(fresh, None, Action.download(), {}, TODAY))
        self.assertFalse(decide(exhausted, None, Action.download(), {}, TODAY))
        self.assertFalse(decide(expired, None, Action.download(), {}, TODAY))
        self.assertTrue(decide(exhausted, self.alice, Action.download(), {}, TODAY))

    def test_password_state_must_match(self) -> None:
        owner = UploadOwner.user(self.alice.id)
        protected = make_upload(owner, public=True, password=StoredPassword.new("pw"))
        open_upload = make_upload(owner, public=True)
        self.assertFalse(decide(protected, self.bob, Action.download(False), {}, TODAY))
        self.assertTrue(decide(protected, self.bob, Action.download(True), {}, TODAY))
        self.assertTrue(decide(open_upload, self.bob, Action.download(False), {}, TODAY))
        self.assertFalse(decide(open_upload, self.bob, Action.download(True), {}, TODAY))

    def test_user_owner_may_edit_and_delete(self) -> None:
        upload = make_upload(UploadOwner.user(self.alice.id))
        for action in (SHARE, RESET_DOWNLOADS, EDIT, TRANSFER, DELETE):
            self.assertTrue(decide(upload, self.alice, action, {}, TODAY))
            self.assertFalse(decide(upload, self.bob, action, {}, TODAY))
            self.assertFalse(decide(upload, None, action, {}, TODAY))

    def test_team_capabilities_gate_actions(self) -> None:
        upload = make_upload(UploadOwner.team(self.team_id))
        editor = {self.team_id: TeamMember(team=self.team_id, user=self.alice.id, can_edit=True, can_delete=False)}
        deleter = {self.team_id: TeamMember(team=self.team_id, user=self.alice.id, can_edit=False, can_delete=True)}
        self.assertTrue(decide(upload, self.alice, EDIT, editor, TODAY))
        self.assertTrue(decide(upload, self.alice, SHARE, editor, TODAY))
        self.assertFalse(decide(upload, self.alice, DELETE, editor, TODAY))
        self.assertTrue(decide(upload, self.alice, DELETE, deleter, TODAY))
        self.assertFalse(decide(upload, self.alice, TRANSFER, deleter, TODAY))
        self.assertTrue(decide(upload, self.alice, VIEW, deleter, TODAY))
        self.assertFalse(decide(upload, self.alice, VIEW, {}, TODAY))


class PermissionServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session = Session(self.engine)
        self.service = PermissionService(self.session)
        self.alice = make_user()
        self.bob = make_user()
        self.team_id = new_key()
        self.session.add_all([
            self.alice,
            self.bob,
            TeamMember(team=self.team_id, user=self.alice.id, can_edit=True, can_delete=False),
        ])
        for user in (self.alice, self.bob):
            user.password = StoredPassword.new("pw")
        self.session.commit()

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def test_consults_membership_rows(self) -> None:
        upload = make_upload(UploadOwner.team(self.team_id))
        self.assertTrue(self.service.can_access(upload, self.alice, EDIT))
        self.assertFalse(self.service.can_access(upload, self.bob, EDIT))
        self.assertTrue(self.service.is_owner(upload, self.alice))
        self.assertFalse(self.service.is_owner(upload, self.bob))

    def test_require_raises_forbidden_and_logs(self) -> None:
        upload = make_upload(UploadOwner.team(self.team_id))
        with self.assertLogs("parcel.events", level="INFO") as captured:
            with self.assertRaises(Forbidden):
                self.service.require(upload, self.alice, DELETE)
        self.assertIn("denied", captured.output[0])
        self.assertIn(str(upload.id), captured.output[0])

    def test_require_without_actor(self) -> None:
        upload = make_upload(UploadOwner.user(self.alice.id))
        with self.assertRaises(Unauthenticated):
            self.service.require(upload, None, EDIT)
        with self.assertRaises(Forbidden):
            self.service.require(upload, None, Action.download())

    def test_bulk_check_rejects_on_first_denial(self) -> None:
        mine = make_upload(UploadOwner.user(self.alice.id))
        team = make_upload(UploadOwner.team(self.team_id))
        theirs = make_upload(UploadOwner.user(self.bob.id))
        self.assertIsNone(self.service.first_denied([mine], self.alice, DELETE))
        self.assertIs(self.service.first_denied([mine, team, theirs], self.alice, DELETE), team)
        with self.assertRaises(Forbidden):
            self.service.require_all([mine, theirs], self.alice, DELETE)


if __name__ == "__main__":
    unittest.main()
