from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)

from .db import Base
from .password import StoredPasswordType
from .types import KeyType, new_key


class UploadOrder(str, enum.Enum):
    FILENAME = "filename"
    SIZE = "size"
    DOWNLOADS = "downloads"
    EXPIRY_DATE = "expiry_date"
    UPLOADED_AT = "uploaded_at"

    @classmethod
    def parse(cls, value: str) -> "UploadOrder":
        normalized = value.strip()
        for item in cls:
            if normalized in (item.value, _camel(item.value)):
                return item
        raise ValueError(f"unknown upload order: {value}")


def _camel(value: str) -> str:
    head, *rest = value.split("_")
    return head + "".join(part.title() for part in rest)


class OwnerKind(str, enum.Enum):
    USER = "user"
    TEAM = "team"


@dataclass(frozen=True)
class UploadOwner:
    """Either a user or a team; an upload always has exactly one."""

    kind: OwnerKind
    id: uuid.UUID

    @classmethod
    def user(cls, user_id: uuid.UUID) -> "UploadOwner":
        return cls(OwnerKind.USER, user_id)

    @classmethod
    def team(cls, team_id: uuid.UUID) -> "UploadOwner":
        return cls(OwnerKind.TEAM, team_id)

    @property
    def is_user(self) -> bool:
        return self.kind is OwnerKind.USER

    @property
    def is_team(self) -> bool:
        return self.kind is OwnerKind.TEAM


class Upload(Base):
    __tablename__ = "uploads"
    __table_args__ = (
        UniqueConstraint("slug", name="uq_uploads_slug"),
        UniqueConstraint("owner_user", "custom_slug", name="uq_uploads_user_custom_slug"),
        UniqueConstraint("owner_team", "custom_slug", name="uq_uploads_team_custom_slug"),
        CheckConstraint("(owner_user IS NULL) <> (owner_team IS NULL)", name="ck_uploads_single_owner"),
        CheckConstraint("NOT has_preview OR preview_error IS NULL", name="ck_uploads_preview_state"),
    )

    id = Column(KeyType, primary_key=True, default=new_key)
    slug = Column(String(32), nullable=False)
    filename = Column(String(255), nullable=False)
    size = Column(BigInteger, nullable=False, default=0)
    public = Column(Boolean, nullable=False, default=False)
    downloads = Column(Integer, nullable=False, default=0)
    limit = Column(Integer)
    remaining = Column(Integer)
    expiry_date = Column(Date)
    password = Column(StoredPasswordType)
    custom_slug = Column(String(100))
    owner_user = Column(KeyType, ForeignKey("users.id"), index=True)
    owner_team = Column(KeyType, ForeignKey("teams.id"), index=True)
    uploaded_by = Column(KeyType, ForeignKey("users.id"))
    uploaded_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    remote_addr = Column(String(64))
    mime_type = Column(String(255))
    has_preview = Column(Boolean, nullable=False, default=False)
    preview_error = Column(Text)

    @property
    def owner(self) -> UploadOwner:
        if self.owner_user is not None:
            return UploadOwner.user(self.owner_user)
        return UploadOwner.team(self.owner_team)

    @owner.setter
    def owner(self, value: UploadOwner) -> None:
        if value.is_user:
            self.owner_user, self.owner_team = value.id, None
        else:
            self.owner_user, self.owner_team = None, value.id

    @property
    def has_password(self) -> bool:
        return self.password is not None


class Tag(Base):
    __tablename__ = "tags"
    __table_args__ = (
        UniqueConstraint("user", "name", name="uq_tags_user_name"),
        UniqueConstraint("team", "name", name="uq_tags_team_name"),
        CheckConstraint('("user" IS NULL) <> (team IS NULL)', name="ck_tags_single_owner"),
    )

    id = Column(KeyType, primary_key=True, default=new_key)
    name = Column(String(100), nullable=False)
    user = Column(KeyType, ForeignKey("users.id"))
    team = Column(KeyType, ForeignKey("teams.id"))


class UploadTag(Base):
    __tablename__ = "upload_tags"

    upload = Column(KeyType, ForeignKey("uploads.id"), primary_key=True)
    tag = Column(KeyType, ForeignKey("tags.id"), primary_key=True)
