from __future__ import annotations

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, String, UniqueConstraint, func

from .db import Base
from .types import KeyType, new_key


class Team(Base):
    __tablename__ = "teams"
    __table_args__ = (UniqueConstraint("slug", name="uq_teams_slug"),)

    id = Column(KeyType, primary_key=True, default=new_key)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), nullable=False)
    limit = Column(BigInteger)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    created_by = Column(KeyType, ForeignKey("users.id"))


class TeamMember(Base):
    __tablename__ = "team_members"
    __table_args__ = (UniqueConstraint("team", "user", name="uq_team_members_team_user"),)

    team = Column(KeyType, ForeignKey("teams.id"), primary_key=True)
    user = Column(KeyType, ForeignKey("users.id"), primary_key=True)
    can_edit = Column(Boolean, nullable=False, default=False)
    can_delete = Column(Boolean, nullable=False, default=False)
    can_config = Column(Boolean, nullable=False, default=False)
