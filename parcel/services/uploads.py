from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Sequence

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import Session, aliased

from parcel.errors import NotFound
from parcel.models import StoredPassword, Tag, Team, TeamMember, Upload, UploadOrder, UploadOwner, UploadTag, User

from .store import StoreService

_ORDER_COLUMNS = {
    UploadOrder.FILENAME: Upload.filename,
    UploadOrder.SIZE: Upload.size,
    UploadOrder.DOWNLOADS: Upload.downloads,
    UploadOrder.EXPIRY_DATE: Upload.expiry_date,
    UploadOrder.UPLOADED_AT: Upload.uploaded_at,
}


@dataclass(frozen=True)
class UploadListEntry:
    id: uuid.UUID
    slug: str
    filename: str
    size: int
    public: bool
    downloads: int
    limit: int | None
    remaining: int | None
    expiry_date: date | None
    has_password: bool
    custom_slug: str | None
    owner_slug: str | None
    uploaded_by_name: str | None
    uploaded_at: datetime
    mime_type: str | None
    has_preview: bool
    tags: tuple[str, ...]


@dataclass(frozen=True)
class UploadPage:
    entries: tuple[UploadListEntry, ...]
    total: int


@dataclass(frozen=True)
class UploadStats:
    total: int
    public: int
    downloads: int
    size: int


def _owner_clause(owner: UploadOwner):
    if owner.is_user:
        return Upload.owner_user == owner.id
    return Upload.owner_team == owner.id


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class UploadService(StoreService):
    def __init__(self, session: Session) -> None:
        super().__init__(session)

    def insert(self, upload: Upload) -> Upload:
        self.session.add(upload)
        self._commit("upload_conflict")
        self.session.refresh(upload)
        return upload

    def save(self, upload: Upload, conflict_message: str = "upload_conflict") -> Upload:
        self._commit(conflict_message)
        return upload

    def get(self, upload_id: uuid.UUID) -> Upload | None:
        return self.session.get(Upload, upload_id)

    def require(self, upload_id: uuid.UUID) -> Upload:
        upload = self.get(upload_id)
        if upload is None:
            raise NotFound("upload_not_found")
        return upload

    def get_many(self, upload_ids: Iterable[uuid.UUID]) -> list[Upload]:
        ids = list(dict.fromkeys(upload_ids))
        if not ids:
            return []
        return list(self.session.scalars(select(Upload).where(Upload.id.in_(ids))))

    def get_by_slug(self, slug: str) -> Upload | None:
        return self.session.scalars(select(Upload).where(Upload.slug == slug)).first()

    def resolve_owner_slug(self, owner_slug: str) -> UploadOwner | None:
        user_id = self.session.scalar(select(User.id).where(User.username == owner_slug))
        if user_id is not None:
            return UploadOwner.user(user_id)
        team_id = self.session.scalar(select(Team.id).where(Team.slug == owner_slug))
        if team_id is not None:
            return UploadOwner.team(team_id)
        return None

    def get_by_custom_slug(self, owner_slug: str, custom_slug: str) -> Upload | None:
        owner = self.resolve_owner_slug(owner_slug)
        if owner is None:
            return None
        stmt = select(Upload).where(_owner_clause(owner), Upload.custom_slug == custom_slug)
        return self.session.scalars(stmt).first()

    def owner_slug(self, owner: UploadOwner) -> str | None:
        if owner.is_user:
            return self.session.scalar(select(User.username).where(User.id == owner.id))
        return self.session.scalar(select(Team.slug).where(Team.id == owner.id))

    def get_existing_slugs(self, slugs: Iterable[str]) -> set[str]:
        candidates = list(set(slugs))
        if not candidates:
            return set()
        return set(self.session.scalars(select(Upload.slug).where(Upload.slug.in_(candidates))))

    def custom_slug_exists(
        self,
        owner: UploadOwner,
        custom_slug: str,
        existing: uuid.UUID | None = None,
    ) -> bool:
        stmt = select(Upload.id).where(_owner_clause(owner), Upload.custom_slug == custom_slug)
        if existing is not None:
            stmt = stmt.where(Upload.id != existing)
        return self.session.scalar(stmt.limit(1)) is not None

    def find_teams_with_custom_slug(self, user_id: uuid.UUID, custom_slug: str) -> list[uuid.UUID]:
        """Teams the user belongs to that already hold an upload with `custom_slug`."""
        stmt = (
            select(Upload.owner_team)
            .join(TeamMember, TeamMember.team == Upload.owner_team)
            .where(TeamMember.user == user_id, Upload.custom_slug == custom_slug)
            .distinct()
        )
        return list(self.session.scalars(stmt))

    def owner_total_size(self, owner: UploadOwner) -> int:
        stmt = select(func.coalesce(func.sum(Upload.size), 0)).where(_owner_clause(owner))
        return int(self.session.scalar(stmt) or 0)

    def record_download(self, upload_id: uuid.UUID, is_owner: bool) -> None:
        values = {"downloads": Upload.downloads + 1}
        if not is_owner:
            values["remaining"] = case(
                (Upload.remaining.is_(None), None),
                (Upload.remaining > 0, Upload.remaining - 1),
                else_=0,
            )
        self._update(upload_id, **values)

    def reset_remaining(self, upload_id: uuid.UUID) -> None:
        self._update(upload_id, remaining=Upload.limit)

    def set_public(self, upload_id: uuid.UUID, public: bool) -> None:
        self._update(upload_id, public=public)

    def set_password(self, upload_id: uuid.UUID, password: StoredPassword | None) -> None:
        self._update(upload_id, password=password)

    def set_mime_type(self, upload_id: uuid.UUID, mime_type: str) -> None:
        self._update(upload_id, mime_type=mime_type)

    def set_preview_error(self, upload_id: uuid.UUID, error: str) -> None:
        self._update(upload_id, has_preview=False, preview_error=error)

    def clear_preview_error(self, upload_id: uuid.UUID) -> None:
        self._update(upload_id, preview_error=None)

    def set_has_preview(self, upload_id: uuid.UUID, has_preview: bool) -> None:
        if has_preview:
            self._update(upload_id, has_preview=True, preview_error=None)
        else:
            self._update(upload_id, has_preview=False)

    def get_all_without_preview(self, offset: int, limit: int) -> list[Upload]:
        stmt = (
            select(Upload)
            .where(Upload.has_preview.is_(False), Upload.preview_error.is_(None))
            .order_by(Upload.uploaded_at, Upload.id)
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.scalars(stmt))

    def delete(self, upload_id: uuid.UUID) -> str:
        slugs = self.delete_many([upload_id])
        if not slugs:
            raise NotFound("upload_not_found")
        return slugs[0]

    def delete_many(self, upload_ids: Sequence[uuid.UUID]) -> list[str]:
        """Delete uploads by id in one statement, returning the slugs that were removed."""
        ids = list(dict.fromkeys(upload_ids))
        if not ids:
            return []
        self.session.execute(delete(UploadTag).where(UploadTag.upload.in_(ids)))
        result = self.session.execute(
            delete(Upload)
            .where(Upload.id.in_(ids))
            .returning(Upload.slug)
            .execution_options(synchronize_session=False)
        )
        slugs = list(result.scalars())
        self._commit()
        self.session.expire_all()
        return slugs

    def delete_for_user(self, user_id: uuid.UUID) -> list[str]:
        ids = list(self.session.scalars(select(Upload.id).where(Upload.owner_user == user_id)))
        return self.delete_many(ids)

    def delete_for_team(self, team_id: uuid.UUID) -> list[str]:
        ids = list(self.session.scalars(select(Upload.id).where(Upload.owner_team == team_id)))
        return self.delete_many(ids)

    def list_for_owner(
        self,
        owner: UploadOwner,
        search: str | None = None,
        order: UploadOrder = UploadOrder.UPLOADED_AT,
        ascending: bool = False,
        offset: int = 0,
        limit: int = 100,
    ) -> UploadPage:
        owner_user = aliased(User)
        uploader = aliased(User)
        filters = [_owner_clause(owner)]
        if search:
            pattern = f"%{_escape_like(search.strip().lower())}%"
            filters.append(func.lower(Upload.filename).like(pattern, escape="\\"))

        column = _ORDER_COLUMNS[order]
        ordering = (column.asc(), Upload.id.asc()) if ascending else (column.desc(), Upload.id.desc())
        stmt = (
            select(
                Upload,
                func.coalesce(owner_user.username, Team.slug).label("owner_slug"),
                uploader.name.label("uploader_name"),
            )
            .outerjoin(owner_user, owner_user.id == Upload.owner_user)
            .outerjoin(Team, Team.id == Upload.owner_team)
            .outerjoin(uploader, uploader.id == Upload.uploaded_by)
            .where(*filters)
            .order_by(*ordering)
            .offset(offset)
            .limit(limit)
        )
        rows = self.session.execute(stmt).all()
        total = self.session.scalar(select(func.count()).select_from(Upload).where(*filters)) or 0
        tags = self.tag_names_for_uploads([row[0].id for row in rows])
        entries = tuple(
            UploadListEntry(
                id=upload.id,
                slug=upload.slug,
                filename=upload.filename,
                size=upload.size,
                public=upload.public,
                downloads=upload.downloads,
                limit=upload.limit,
                remaining=upload.remaining,
                expiry_date=upload.expiry_date,
                has_password=upload.has_password,
                custom_slug=upload.custom_slug,
                owner_slug=owner_slug,
                uploaded_by_name=uploader_name,
                uploaded_at=upload.uploaded_at,
                mime_type=upload.mime_type,
                has_preview=upload.has_preview,
                tags=tuple(tags.get(upload.id, ())),
            )
            for upload, owner_slug, uploader_name in rows
        )
        return UploadPage(entries=entries, total=total)

    def tag_names_for_uploads(self, upload_ids: Sequence[uuid.UUID]) -> dict[uuid.UUID, list[str]]:
        if not upload_ids:
            return {}
        stmt = (
            select(UploadTag.upload, Tag.name)
            .join(Tag, Tag.id == UploadTag.tag)
            .where(UploadTag.upload.in_(list(upload_ids)))
            .order_by(Tag.name)
        )
        names: dict[uuid.UUID, list[str]] = {}
        for upload_id, name in self.session.execute(stmt).all():
            names.setdefault(upload_id, []).append(name)
        return names

    def stats(self, owner: UploadOwner | None = None) -> UploadStats:
        stmt = select(
            func.count(Upload.id),
            func.count(Upload.id).filter(Upload.public.is_(True)),
            func.coalesce(func.sum(Upload.downloads), 0),
            func.coalesce(func.sum(Upload.size), 0),
        )
        if owner is not None:
            stmt = stmt.where(_owner_clause(owner))
        total, public, downloads, size = self.session.execute(stmt).one()
        return UploadStats(total=total or 0, public=public or 0, downloads=int(downloads), size=int(size))

    def _update(self, upload_id: uuid.UUID, **values) -> None:
        stmt = (
            update(Upload)
            .where(Upload.id == upload_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount == 0:
            self.session.rollback()
            raise NotFound("upload_not_found")
        self._commit()
        self.session.expire_all()
