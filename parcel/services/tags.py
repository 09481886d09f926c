from __future__ import annotations

import uuid
from typing import Iterable

from sqlalchemy import delete, insert, select

from parcel.models import Tag, UploadOwner, UploadTag

from .store import StoreService


def _tag_owner_clause(owner: UploadOwner):
    if owner.is_user:
        return Tag.user == owner.id
    return Tag.team == owner.id


class TagService(StoreService):
    """Tags live in a namespace per owning user or team."""

    def get_or_create_for_owner(self, owner: UploadOwner, name: str) -> Tag:
        name = name.strip()
        stmt = select(Tag).where(_tag_owner_clause(owner), Tag.name == name)
        tag = self.session.scalars(stmt).first()
        if tag is not None:
            return tag
        tag = Tag(name=name, user=owner.id if owner.is_user else None, team=owner.id if owner.is_team else None)
        self.session.add(tag)
        self._commit("tag_exists")
        self.session.refresh(tag)
        return tag

    def tags_for_owner(self, owner: UploadOwner) -> list[Tag]:
        stmt = select(Tag).where(_tag_owner_clause(owner)).order_by(Tag.name)
        return list(self.session.scalars(stmt))

    def tags_for_upload(self, upload_id: uuid.UUID) -> list[Tag]:
        stmt = (
            select(Tag)
            .join(UploadTag, UploadTag.tag == Tag.id)
            .where(UploadTag.upload == upload_id)
            .order_by(Tag.name)
        )
        return list(self.session.scalars(stmt))

    def replace_tags(self, upload_id: uuid.UUID, tag_ids: Iterable[uuid.UUID]) -> None:
        ids = list(dict.fromkeys(tag_ids))
        self.session.execute(delete(UploadTag).where(UploadTag.upload == upload_id))
        if ids:
            self.session.execute(insert(UploadTag).values([{"upload": upload_id, "tag": tag_id} for tag_id in ids]))
        self._commit()
