from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import delete, func, insert, select
from sqlalchemy.orm import Session

from parcel.errors import Conflict, NotFound
from parcel.models import ApiKey, StoredPassword, Tag, Team, TeamMember, Upload, UploadOrder, User
from parcel.utils.validation import ValidationService

from .store import StoreService
from .uploads import UploadService


@dataclass(frozen=True)
class TeamMembership:
    team: uuid.UUID
    can_edit: bool = False
    can_delete: bool = False
    can_config: bool = False


@dataclass(frozen=True)
class UserListEntry:
    user: User
    team_count: int
    upload_count: int
    upload_total: int


@dataclass(frozen=True)
class UserStats:
    total: int
    enabled: int
    admins: int


class UserService(StoreService):
    def __init__(self, session: Session, validator: ValidationService | None = None) -> None:
        super().__init__(session)
        self.validator = validator or ValidationService()

    def requires_setup(self) -> bool:
        return (self.session.scalar(select(func.count()).select_from(User)) or 0) == 0

    def setup(self, username: str, password: str) -> User:
        if not self.requires_setup():
            raise Conflict("setup_complete")
        return self.create(username, username, password, admin=True)

    def create(
        self,
        username: str,
        name: str,
        password: str,
        admin: bool = False,
        enabled: bool = True,
        limit: int | None = None,
        created_by: uuid.UUID | None = None,
    ) -> User:
        username = username.strip()
        self.validator.validate_account(username, name.strip(), password).raise_for_violations()
        if self.username_exists(username):
            raise Conflict("username_taken")
        user = User(
            username=username,
            name=name.strip(),
            password=StoredPassword.new(password),
            admin=admin,
            enabled=enabled,
            limit=limit,
            default_order=UploadOrder.UPLOADED_AT.value,
            default_asc=False,
            created_by=created_by,
        )
        self.session.add(user)
        self._commit("username_taken")
        self.session.refresh(user)
        return user

    def get(self, user_id: uuid.UUID) -> User | None:
        return self.session.get(User, user_id)

    def require(self, user_id: uuid.UUID) -> User:
        user = self.get(user_id)
        if user is None:
            raise NotFound("user_not_found")
        return user

    def get_by_username(self, username: str) -> User | None:
        return self.session.scalars(select(User).where(User.username == username.strip())).first()

    def username_exists(self, slug: str, existing: uuid.UUID | None = None) -> bool:
        return self.identity_slug_taken(slug, existing_user=existing)

    def update(
        self,
        user_id: uuid.UUID,
        username: str,
        name: str,
        admin: bool,
        enabled: bool,
        limit: int | None,
    ) -> User:
        user = self.require(user_id)
        username = username.strip()
        self.validator.validate_account(username, name.strip()).raise_for_violations()
        if self.username_exists(username, existing=user.id):
            raise Conflict("username_taken")
        user.username = username
        user.name = name.strip()
        user.admin = admin
        user.enabled = enabled
        user.limit = limit
        self._commit("username_taken")
        return user

    def set_password(self, user_id: uuid.UUID, password: StoredPassword) -> None:
        user = self.require(user_id)
        user.password = password
        self._commit()

    def set_totp_secret(self, user_id: uuid.UUID, secret: str | None) -> None:
        user = self.require(user_id)
        user.totp_secret = secret
        self._commit()

    def remove_totp_secret(self, user_id: uuid.UUID) -> None:
        self.set_totp_secret(user_id, None)

    def set_enabled(self, user_id: uuid.UUID, enabled: bool) -> None:
        user = self.require(user_id)
        user.enabled = enabled
        self._commit()

    def set_default_order(self, user_id: uuid.UUID, order: UploadOrder, ascending: bool) -> None:
        user = self.require(user_id)
        user.default_order = order.value
        user.default_asc = ascending
        self._commit()

    def record_last_access(self, user_id: uuid.UUID, when: datetime | None = None) -> None:
        user = self.require(user_id)
        user.last_access = when or datetime.now(timezone.utc)
        self._commit()

    def get_teams(self, user_id: uuid.UUID) -> list[tuple[Team, TeamMember]]:
        stmt = (
            select(Team, TeamMember)
            .join(TeamMember, TeamMember.team == Team.id)
            .where(TeamMember.user == user_id)
            .order_by(Team.name, Team.id)
        )
        return [(team, member) for team, member in self.session.execute(stmt).all()]

    def has_teams(self, user_id: uuid.UUID) -> bool:
        stmt = select(func.count()).select_from(TeamMember).where(TeamMember.user == user_id)
        return (self.session.scalar(stmt) or 0) > 0

    def is_member_of(self, user_id: uuid.UUID, team_id: uuid.UUID) -> bool:
        stmt = select(TeamMember.team).where(TeamMember.user == user_id, TeamMember.team == team_id)
        return self.session.scalar(stmt) is not None

    def join_team(self, user_id: uuid.UUID, membership: TeamMembership) -> None:
        self.join_teams(user_id, [membership])

    def join_teams(self, user_id: uuid.UUID, rows: Sequence[TeamMembership]) -> None:
        if not rows:
            return
        values = [
            {
                "team": row.team,
                "user": user_id,
                "can_edit": row.can_edit,
                "can_delete": row.can_delete,
                "can_config": row.can_config,
            }
            for row in rows
        ]
        self.session.execute(insert(TeamMember).values(values))
        self._commit("already_member")

    def leave_team(self, user_id: uuid.UUID, team_id: uuid.UUID) -> None:
        result = self.session.execute(
            delete(TeamMember).where(TeamMember.user == user_id, TeamMember.team == team_id)
        )
        if result.rowcount == 0:
            self.session.rollback()
            raise NotFound("membership_not_found")
        self._commit()

    def leave_all_teams(self, user_id: uuid.UUID) -> int:
        result = self.session.execute(delete(TeamMember).where(TeamMember.user == user_id))
        self._commit()
        return result.rowcount

    def delete(self, user_id: uuid.UUID) -> list[str]:
        """Remove a user and everything it owns, returning the slugs of removed uploads."""
        self.require(user_id)
        slugs = UploadService(self.session).delete_for_user(user_id)
        self.session.execute(delete(TeamMember).where(TeamMember.user == user_id))
        self.session.execute(delete(ApiKey).where(ApiKey.owner == user_id))
        self.session.execute(delete(Tag).where(Tag.user == user_id))
        self.session.execute(delete(User).where(User.id == user_id))
        self._commit()
        return slugs

    def list_users(self, offset: int = 0, limit: int = 100) -> list[UserListEntry]:
        team_counts = (
            select(TeamMember.user.label("user_id"), func.count().label("team_count"))
            .group_by(TeamMember.user)
            .subquery()
        )
        upload_sums = (
            select(
                Upload.owner_user.label("user_id"),
                func.count().label("upload_count"),
                func.sum(Upload.size).label("upload_total"),
            )
            .where(Upload.owner_user.is_not(None))
            .group_by(Upload.owner_user)
            .subquery()
        )
        stmt = (
            select(User, team_counts.c.team_count, upload_sums.c.upload_count, upload_sums.c.upload_total)
            .outerjoin(team_counts, team_counts.c.user_id == User.id)
            .outerjoin(upload_sums, upload_sums.c.user_id == User.id)
            .order_by(User.username)
            .offset(offset)
            .limit(limit)
        )
        return [
            UserListEntry(user=user, team_count=teams or 0, upload_count=count or 0, upload_total=total or 0)
            for user, teams, count, total in self.session.execute(stmt).all()
        ]

    def user_stats(self) -> UserStats:
        stmt = select(
            func.count(User.id),
            func.count(User.id).filter(User.enabled.is_(True)),
            func.count(User.id).filter(User.admin.is_(True)),
        )
        total, enabled, admins = self.session.execute(stmt).one()
        return UserStats(total=total or 0, enabled=enabled or 0, admins=admins or 0)
