from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from parcel.errors import Forbidden, Unauthenticated
from parcel.logging import log_event
from parcel.models import TeamMember, Upload, User


class ActionKind(str, enum.Enum):
    VIEW = "view"
    DOWNLOAD = "download"
    SHARE = "share"
    RESET_DOWNLOADS = "reset_downloads"
    EDIT = "edit"
    TRANSFER = "transfer"
    DELETE = "delete"


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    with_password: bool = False

    @classmethod
    def download(cls, with_password: bool = False) -> "Action":
        return cls(ActionKind.DOWNLOAD, with_password)

    def describe(self) -> str:
        if self.kind is ActionKind.DOWNLOAD:
            return f"download(with_password={self.with_password})"
        return self.kind.value


VIEW = Action(ActionKind.VIEW)
SHARE = Action(ActionKind.SHARE)
RESET_DOWNLOADS = Action(ActionKind.RESET_DOWNLOADS)
EDIT = Action(ActionKind.EDIT)
TRANSFER = Action(ActionKind.TRANSFER)
DELETE = Action(ActionKind.DELETE)

_EDIT_ACTIONS = (ActionKind.SHARE, ActionKind.RESET_DOWNLOADS, ActionKind.EDIT, ActionKind.TRANSFER)


def owns(upload: Upload, actor: User | None, memberships: Mapping[uuid.UUID, TeamMember]) -> bool:
    if actor is None:
        return False
    owner = upload.owner
    if owner.is_user:
        return owner.id == actor.id
    return owner.id in memberships


def public_download_allowed(upload: Upload, with_password: bool, today: date) -> bool:
    if not upload.public:
        return False
    if upload.remaining is not None and upload.remaining < 1:
        return False
    if upload.expiry_date is not None and upload.expiry_date < today:
        return False
    return upload.has_password == with_password


def decide(
    upload: Upload,
    actor: User | None,
    action: Action,
    memberships: Mapping[uuid.UUID, TeamMember],
    today: date,
) -> bool:
    """Whether `actor` may perform `action` on `upload`.

    `memberships` maps team ids to the actor's membership rows; only the
    entry for the owning team is consulted.
    """
    if actor is not None and actor.admin:
        return True
    if action.kind is ActionKind.VIEW:
        return upload.public or owns(upload, actor, memberships)
    if action.kind is ActionKind.DOWNLOAD:
        return owns(upload, actor, memberships) or public_download_allowed(upload, action.with_password, today)
    if actor is None:
        return False
    owner = upload.owner
    if owner.is_user:
        return owner.id == actor.id
    member = memberships.get(owner.id)
    if member is None:
        return False
    if action.kind is ActionKind.DELETE:
        return bool(member.can_delete)
    if action.kind in _EDIT_ACTIONS:
        return bool(member.can_edit)
    return False


class PermissionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def memberships(self, actor: User | None, team_ids: Sequence[uuid.UUID] | None = None) -> dict[uuid.UUID, TeamMember]:
        if actor is None:
            return {}
        stmt = select(TeamMember).where(TeamMember.user == actor.id)
        if team_ids is not None:
            ids = list(dict.fromkeys(team_ids))
            if not ids:
                return {}
            stmt = stmt.where(TeamMember.team.in_(ids))
        return {member.team: member for member in self.session.scalars(stmt)}

    def _memberships_for(self, uploads: Sequence[Upload], actor: User | None) -> dict[uuid.UUID, TeamMember]:
        team_ids = [upload.owner_team for upload in uploads if upload.owner_team is not None]
        return self.memberships(actor, team_ids)

    def is_owner(self, upload: Upload, actor: User | None) -> bool:
        return owns(upload, actor, self._memberships_for([upload], actor))

    def can_access(self, upload: Upload, actor: User | None, action: Action, today: date | None = None) -> bool:
        memberships = self._memberships_for([upload], actor)
        allowed = decide(upload, actor, action, memberships, today or date.today())
        if not allowed:
            self._log_denial(upload, actor, action)
        return allowed

    def require(self, upload: Upload, actor: User | None, action: Action, today: date | None = None) -> None:
        if self.can_access(upload, actor, action, today):
            return
        if actor is None and action.kind not in (ActionKind.VIEW, ActionKind.DOWNLOAD):
            raise Unauthenticated("authentication_required")
        raise Forbidden()

    def first_denied(
        self,
        uploads: Sequence[Upload],
        actor: User | None,
        action: Action,
        today: date | None = None,
    ) -> Upload | None:
        """Check a batch against one membership lookup; returns the first upload refused."""
        memberships = self._memberships_for(uploads, actor)
        moment = today or date.today()
        for upload in uploads:
            if not decide(upload, actor, action, memberships, moment):
                self._log_denial(upload, actor, action)
                return upload
        return None

    def require_all(
        self,
        uploads: Sequence[Upload],
        actor: User | None,
        action: Action,
        today: date | None = None,
    ) -> None:
        if self.first_denied(uploads, actor, action, today) is None:
            return
        if actor is None:
            raise Unauthenticated("authentication_required")
        raise Forbidden()

    def _log_denial(self, upload: Upload, actor: User | None, action: Action) -> None:
        log_event(
            "authorization",
            action.describe(),
            "denied",
            metadata={"user_id": actor.id if actor else None, "upload_id": upload.id},
        )
