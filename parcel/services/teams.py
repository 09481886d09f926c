from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Sequence

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import Session

from parcel.errors import Conflict, Forbidden, NotFound
from parcel.logging import log_event
from parcel.models import Tag, Team, TeamMember, Upload, User
from parcel.utils.validation import ValidationService

from .store import StoreService
from .uploads import UploadService


@dataclass(frozen=True)
class MemberPermissions:
    user: uuid.UUID
    can_edit: bool
    can_delete: bool
    can_config: bool


@dataclass(frozen=True)
class TeamListEntry:
    team: Team
    member_count: int
    upload_count: int
    upload_total: int


@dataclass(frozen=True)
class TeamStats:
    total: int
    enabled: int


class TeamService(StoreService):
    def __init__(self, session: Session, validator: ValidationService | None = None) -> None:
        super().__init__(session)
        self.validator = validator or ValidationService()

    def create(
        self,
        name: str,
        slug: str,
        created_by: uuid.UUID | None = None,
        limit: int | None = None,
    ) -> Team:
        """Create a team; the creating user joins it with every capability."""
        slug = slug.strip()
        self.validator.validate_team(name.strip(), slug).raise_for_violations()
        if self.slug_exists(slug):
            raise Conflict("slug_taken")
        team = Team(name=name.strip(), slug=slug, limit=limit, created_by=created_by)
        self.session.add(team)
        self.session.flush()
        if created_by is not None:
            self.session.add(
                TeamMember(team=team.id, user=created_by, can_edit=True, can_delete=True, can_config=True)
            )
        self._commit("slug_taken")
        self.session.refresh(team)
        return team

    def get(self, team_id: uuid.UUID) -> Team | None:
        return self.session.get(Team, team_id)

    def require(self, team_id: uuid.UUID) -> Team:
        team = self.get(team_id)
        if team is None:
            raise NotFound("team_not_found")
        return team

    def get_by_slug(self, slug: str) -> Team | None:
        return self.session.scalars(select(Team).where(Team.slug == slug.strip())).first()

    def slug_exists(self, slug: str, existing: uuid.UUID | None = None) -> bool:
        return self.identity_slug_taken(slug, existing_team=existing)

    def update(
        self,
        team_id: uuid.UUID,
        name: str,
        slug: str,
        limit: int | None,
        enabled: bool,
    ) -> Team:
        team = self.require(team_id)
        slug = slug.strip()
        self.validator.validate_team(name.strip(), slug).raise_for_violations()
        if self.slug_exists(slug, existing=team.id):
            raise Conflict("slug_taken")
        team.name = name.strip()
        team.slug = slug
        team.limit = limit
        team.enabled = enabled
        self._commit("slug_taken")
        return team

    def require_config(self, team_id: uuid.UUID, actor: User) -> TeamMember:
        """The actor's membership, provided it carries the configuration capability."""
        member = self.get_member(team_id, actor.id)
        if member is None or not member.can_config:
            log_event(
                "teams",
                "configure",
                "denied",
                "not_team_member" if member is None else "missing_capability",
                metadata={"team_id": team_id, "user_id": actor.id},
            )
            raise Forbidden("team_config_denied")
        return member

    def configure(self, team_id: uuid.UUID, actor: User, name: str, slug: str) -> Team:
        """Rename a team on behalf of a configuring member; quota and status stay as they are."""
        self.require_config(team_id, actor)
        team = self.require(team_id)
        return self.update(team_id, name, slug, team.limit, team.enabled)

    def configure_members(self, team_id: uuid.UUID, actor: User, rows: Sequence[MemberPermissions]) -> int:
        self.require_config(team_id, actor)
        return self.batch_update_permissions(team_id, rows)

    def delete(self, team_id: uuid.UUID) -> list[str]:
        """Remove a team with its memberships, tags and uploads; returns the removed upload slugs."""
        self.require(team_id)
        slugs = UploadService(self.session).delete_for_team(team_id)
        self.session.execute(delete(TeamMember).where(TeamMember.team == team_id))
        self.session.execute(delete(Tag).where(Tag.team == team_id))
        self.session.execute(delete(Team).where(Team.id == team_id))
        self._commit()
        return slugs

    def add_member(
        self,
        team_id: uuid.UUID,
        user_id: uuid.UUID,
        can_edit: bool = False,
        can_delete: bool = False,
        can_config: bool = False,
    ) -> TeamMember:
        if self.get_member(team_id, user_id) is not None:
            raise Conflict("already_member")
        member = TeamMember(
            team=team_id, user=user_id, can_edit=can_edit, can_delete=can_delete, can_config=can_config
        )
        self.session.add(member)
        self._commit("already_member")
        return member

    def remove_member(self, team_id: uuid.UUID, user_id: uuid.UUID) -> None:
        result = self.session.execute(
            delete(TeamMember).where(TeamMember.team == team_id, TeamMember.user == user_id)
        )
        if result.rowcount == 0:
            self.session.rollback()
            raise NotFound("membership_not_found")
        self._commit()

    def get_member(self, team_id: uuid.UUID, user_id: uuid.UUID) -> TeamMember | None:
        stmt = select(TeamMember).where(TeamMember.team == team_id, TeamMember.user == user_id)
        return self.session.scalars(stmt).first()

    def members(self, team_id: uuid.UUID) -> list[tuple[TeamMember, User]]:
        stmt = (
            select(TeamMember, User)
            .join(User, User.id == TeamMember.user)
            .where(TeamMember.team == team_id)
            .order_by(User.username)
        )
        return [(member, user) for member, user in self.session.execute(stmt).all()]

    def memberships_for_user(self, user_id: uuid.UUID) -> dict[uuid.UUID, TeamMember]:
        stmt = select(TeamMember).where(TeamMember.user == user_id)
        return {member.team: member for member in self.session.scalars(stmt)}

    def teams_for_user(self, user_id: uuid.UUID) -> list[Team]:
        stmt = (
            select(Team)
            .join(TeamMember, TeamMember.team == Team.id)
            .where(TeamMember.user == user_id)
            .order_by(Team.name, Team.id)
        )
        return list(self.session.scalars(stmt))

    def batch_update_permissions(self, team_id: uuid.UUID, rows: Sequence[MemberPermissions]) -> int:
        """Update the capabilities of several members in a single statement."""
        if not rows:
            return 0
        user_ids = [row.user for row in rows]

        def capability(column, attribute: str):
            whens = [(TeamMember.user == row.user, getattr(row, attribute)) for row in rows]
            return case(*whens, else_=column)

        stmt = (
            update(TeamMember)
            .where(TeamMember.team == team_id, TeamMember.user.in_(user_ids))
            .values(
                can_edit=capability(TeamMember.can_edit, "can_edit"),
                can_delete=capability(TeamMember.can_delete, "can_delete"),
                can_config=capability(TeamMember.can_config, "can_config"),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount == 0:
            self.session.rollback()
            raise NotFound("membership_not_found")
        self._commit()
        self.session.expire_all()
        return result.rowcount

    def list_teams(self, offset: int = 0, limit: int = 100) -> list[TeamListEntry]:
        member_counts = (
            select(TeamMember.team.label("team_id"), func.count().label("member_count"))
            .group_by(TeamMember.team)
            .subquery()
        )
        upload_sums = (
            select(
                Upload.owner_team.label("team_id"),
                func.count().label("upload_count"),
                func.sum(Upload.size).label("upload_total"),
            )
            .where(Upload.owner_team.is_not(None))
            .group_by(Upload.owner_team)
            .subquery()
        )
        stmt = (
            select(Team, member_counts.c.member_count, upload_sums.c.upload_count, upload_sums.c.upload_total)
            .outerjoin(member_counts, member_counts.c.team_id == Team.id)
            .outerjoin(upload_sums, upload_sums.c.team_id == Team.id)
            .order_by(Team.name, Team.id)
            .offset(offset)
            .limit(limit)
        )
        return [
            TeamListEntry(team=team, member_count=members or 0, upload_count=count or 0, upload_total=total or 0)
            for team, members, count, total in self.session.execute(stmt).all()
        ]

    def team_stats(self) -> TeamStats:
        stmt = select(func.count(Team.id), func.count(Team.id).filter(Team.enabled.is_(True)))
        total, enabled = self.session.execute(stmt).one()
        return TeamStats(total=total or 0, enabled=enabled or 0)
