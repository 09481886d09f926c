"""Upload creation, editing, transfer, deletion and download accounting.

The database row and the cache file named after the upload's opaque slug are
managed together: the file is written before the row is inserted and removed
again when the insert fails; rows are deleted before their files, and any
file left behind is reconciled by the cache sweep.
"""

from __future__ import annotations

import enum
import logging
import shutil
import uuid
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import BinaryIO, Callable, Iterable, Sequence

from sqlalchemy import delete
from sqlalchemy.orm import Session

from parcel.errors import Conflict, Forbidden, NotFound, StorageFailure, ValidationError
from parcel.logging import log_event
from parcel.models import StoredPassword, Team, Upload, UploadOwner, UploadTag, User, new_key
from parcel.utils.http import content_disposition
from parcel.utils.slugs import generate_unique_slug
from parcel.utils.validation import ValidationService

from .cache import cache_path, preview_path, remove_upload_files
from .permissions import DELETE, EDIT, RESET_DOWNLOADS, SHARE, TRANSFER, VIEW, Action, PermissionService
from .tags import TagService
from .teams import TeamService
from .uploads import UploadService

logger = logging.getLogger("parcel.uploads")

CHUNK_SIZE = 64 * 1024

PreviewNotifier = Callable[[Sequence[uuid.UUID]], object]


class TransferMode(str, enum.Enum):
    COPY = "copy"
    MOVE = "move"


@dataclass(frozen=True)
class UploadEdit:
    filename: str
    public: bool
    limit: int | None
    expiry_date: date | None
    has_password: bool
    password: str | None = None
    custom_slug: str | None = None


@dataclass(frozen=True)
class Download:
    upload: Upload
    path: Path
    content_length: int
    content_disposition: str
    mime_type: str | None


@dataclass(frozen=True)
class Preview:
    upload: Upload
    path: Path
    content_length: int


class UploadLifecycle:
    def __init__(
        self,
        session: Session,
        cache_dir: Path,
        notify: PreviewNotifier | None = None,
        validator: ValidationService | None = None,
    ) -> None:
        self.session = session
        self.cache_dir = cache_dir
        self.notify = notify
        self.validator = validator or ValidationService()
        self.uploads = UploadService(session)
        self.teams = TeamService(session)
        self.tags = TagService(session)
        self.permissions = PermissionService(session)

    def create(
        self,
        actor: User,
        owner: UploadOwner,
        filename: str,
        stream: BinaryIO,
        public: bool = False,
        expiry_date: date | None = None,
        limit: int | None = None,
        password: str | None = None,
        custom_slug: str | None = None,
        remote_addr: str | None = None,
        tags: Sequence[str] = (),
        today: date | None = None,
    ) -> Upload:
        filename = filename.strip()
        custom_slug = custom_slug.strip() if custom_slug else None
        self._require_owner_access(actor, owner)
        self.validator.validate_upload(filename, limit, expiry_date, custom_slug, today).raise_for_violations()
        self.validator.validate_tags(tags).raise_for_violations()

        slug = generate_unique_slug(self.uploads.get_existing_slugs)
        path = cache_path(self.cache_dir, slug)
        size = self._write_stream(stream, path)
        try:
            if custom_slug and self.uploads.custom_slug_exists(owner, custom_slug):
                raise Conflict("custom_slug_taken")
            self._check_quota(owner, size)
            upload = Upload(
                id=new_key(),
                slug=slug,
                filename=filename,
                size=size,
                public=public,
                downloads=0,
                limit=limit,
                remaining=limit,
                expiry_date=expiry_date,
                password=StoredPassword.new(password) if password else None,
                custom_slug=custom_slug,
                uploaded_by=actor.id,
                remote_addr=remote_addr,
                has_preview=False,
            )
            upload.owner = owner
            self.uploads.insert(upload)
        except Exception:
            self._discard(path)
            raise

        if tags:
            self._apply_tags(upload, tags)
        logger.info("Stored upload %s (%s, %d bytes)", upload.id, upload.slug, size)
        self._publish([upload.id])
        return upload

    def edit(self, upload_id: uuid.UUID, actor: User, changes: UploadEdit, today: date | None = None) -> Upload:
        upload = self.uploads.require(upload_id)
        self.permissions.require(upload, actor, EDIT)
        filename = changes.filename.strip()
        custom_slug = changes.custom_slug.strip() if changes.custom_slug else None
        expiry_check = changes.expiry_date if changes.expiry_date != upload.expiry_date else None
        self.validator.validate_upload(filename, changes.limit, expiry_check, custom_slug, today).raise_for_violations()

        if custom_slug and custom_slug != upload.custom_slug:
            if self.uploads.custom_slug_exists(upload.owner, custom_slug, existing=upload.id):
                raise Conflict("custom_slug_taken")

        if changes.limit == upload.limit:
            remaining = upload.remaining if upload.remaining is not None else changes.limit
        else:
            remaining = changes.limit

        if not changes.has_password:
            stored = None
        elif changes.password:
            stored = StoredPassword.new(changes.password)
        elif upload.password is not None:
            stored = upload.password
        else:
            raise ValidationError(violations=("password_required",))

        upload.filename = filename
        upload.public = changes.public
        upload.limit = changes.limit
        upload.remaining = remaining
        upload.expiry_date = changes.expiry_date
        upload.password = stored
        upload.custom_slug = custom_slug
        self.uploads.save(upload, "custom_slug_taken")
        return upload

    def set_tags(self, upload_id: uuid.UUID, actor: User, names: Sequence[str]) -> list[str]:
        upload = self.uploads.require(upload_id)
        self.permissions.require(upload, actor, EDIT)
        self.validator.validate_tags(names).raise_for_violations()
        return self._apply_tags(upload, names)

    def set_public(self, upload_id: uuid.UUID, actor: User, public: bool) -> None:
        upload = self.uploads.require(upload_id)
        self.permissions.require(upload, actor, EDIT)
        self.uploads.set_public(upload.id, public)

    def reset_downloads(self, upload_id: uuid.UUID, actor: User) -> None:
        upload = self.uploads.require(upload_id)
        self.permissions.require(upload, actor, RESET_DOWNLOADS)
        self.uploads.reset_remaining(upload.id)

    def clear_preview_error(self, upload_id: uuid.UUID, actor: User) -> None:
        upload = self.uploads.require(upload_id)
        self.permissions.require(upload, actor, EDIT)
        self.uploads.clear_preview_error(upload.id)
        self._publish([upload.id])

    def share_link(self, upload_id: uuid.UUID, actor: User) -> str:
        upload = self.uploads.require(upload_id)
        self.permissions.require(upload, actor, SHARE)
        if upload.custom_slug:
            owner_slug = self.uploads.owner_slug(upload.owner)
            if owner_slug:
                return f"/{owner_slug}/{upload.custom_slug}"
        return f"/uploads/{upload.slug}"

    def find_teams_with_custom_slug(self, actor: User, custom_slug: str) -> list[Team]:
        team_ids = self.uploads.find_teams_with_custom_slug(actor.id, custom_slug)
        return [team for team in (self.teams.get(team_id) for team_id in team_ids) if team is not None]

    def transfer(self, upload_id: uuid.UUID, actor: User, team_id: uuid.UUID, mode: TransferMode) -> Upload:
        """Copy or move a user-owned upload into a team the actor belongs to.

        The result is always a new row with a fresh id and slug.
        """
        upload = self.uploads.require(upload_id)
        self.permissions.require(upload, actor, TRANSFER)
        if not upload.owner.is_user:
            raise ValidationError(violations=("transfer_requires_user_owner",))
        team = self.teams.require(team_id)
        if self.teams.get_member(team.id, actor.id) is None:
            raise Forbidden("not_team_member")
        target = UploadOwner.team(team.id)
        if upload.custom_slug and self.uploads.custom_slug_exists(target, upload.custom_slug):
            raise Conflict("custom_slug_taken")
        self._check_quota(target, upload.size)

        slug = generate_unique_slug(self.uploads.get_existing_slugs)
        clone = Upload(
            id=new_key(),
            slug=slug,
            filename=upload.filename,
            size=upload.size,
            public=upload.public,
            downloads=upload.downloads,
            limit=upload.limit,
            remaining=upload.remaining,
            expiry_date=upload.expiry_date,
            password=upload.password,
            custom_slug=upload.custom_slug,
            uploaded_by=upload.uploaded_by,
            uploaded_at=upload.uploaded_at,
            remote_addr=upload.remote_addr,
            mime_type=upload.mime_type,
            has_preview=upload.has_preview,
            preview_error=upload.preview_error,
        )
        clone.owner = target

        moved = self._transfer_files(upload.slug, slug, mode)
        try:
            if mode is TransferMode.MOVE:
                self.session.execute(delete(UploadTag).where(UploadTag.upload == upload.id))
                self.session.delete(upload)
                self.session.flush()
            self.uploads.insert(clone)
        except Exception:
            self.session.rollback()
            self._revert_files(moved, mode)
            raise

        log_event(
            "uploads",
            f"transfer_{mode.value}",
            "completed",
            metadata={"upload_id": upload_id, "new_upload_id": clone.id, "team_id": team.id},
        )
        if not clone.has_preview:
            self._publish([clone.id])
        return clone

    def delete(self, upload_id: uuid.UUID, actor: User) -> None:
        upload = self.uploads.require(upload_id)
        self.permissions.require(upload, actor, DELETE)
        slug = self.uploads.delete(upload.id)
        remove_upload_files(self.cache_dir, [slug])

    def bulk_delete(self, upload_ids: Sequence[uuid.UUID], actor: User) -> list[str]:
        """All-or-nothing deletion: one refused upload aborts the whole batch."""
        ids = list(dict.fromkeys(upload_ids))
        uploads = self.uploads.get_many(ids)
        if len(uploads) != len(ids):
            raise NotFound("upload_not_found")
        self.permissions.require_all(uploads, actor, DELETE)
        slugs = self.uploads.delete_many(ids)
        remove_upload_files(self.cache_dir, slugs)
        log_event("uploads", "bulk_delete", "completed", metadata={"count": len(slugs), "user_id": actor.id})
        return slugs

    def download(
        self,
        slug: str,
        actor: User | None,
        password: str | None = None,
        today: date | None = None,
    ) -> Download:
        upload = self.uploads.get_by_slug(slug)
        if upload is None:
            raise NotFound("upload_not_found")
        return self._download(upload, actor, password, today)

    def download_by_custom_slug(
        self,
        owner_slug: str,
        custom_slug: str,
        actor: User | None,
        password: str | None = None,
        today: date | None = None,
    ) -> Download:
        upload = self.uploads.get_by_custom_slug(owner_slug, custom_slug)
        if upload is None:
            raise NotFound("upload_not_found")
        return self._download(upload, actor, password, today)

    def preview(self, upload_id: uuid.UUID, actor: User | None) -> Preview:
        """The generated preview image of an upload the actor may view."""
        upload = self.uploads.require(upload_id)
        self.permissions.require(upload, actor, VIEW)
        if not upload.has_preview:
            logger.warning("Upload %s does not have a preview", upload.id)
            raise NotFound("preview_not_found")
        path = preview_path(self.cache_dir, upload.slug)
        try:
            size = path.stat().st_size
        except OSError as exc:
            logger.error("Unable to read preview for upload %s at %s: %s", upload.id, path, exc)
            raise StorageFailure("preview_file_missing") from exc
        return Preview(upload=upload, path=path, content_length=size)

    def _download(self, upload: Upload, actor: User | None, password: str | None, today: date | None) -> Download:
        with_password = password is not None
        self.permissions.require(upload, actor, Action.download(with_password), today)
        is_owner = self.permissions.is_owner(upload, actor)
        if with_password and upload.password is not None and not (is_owner or (actor and actor.admin)):
            if not upload.password.verify(password):
                log_event("uploads", "download", "denied", "bad_password", metadata={"upload_id": upload.id})
                raise Forbidden()
            if upload.password.needs_migration():
                self.uploads.set_password(upload.id, StoredPassword.new(password))

        path = cache_path(self.cache_dir, upload.slug)
        if not path.is_file():
            logger.error("Cache file missing for upload %s (%s)", upload.id, upload.slug)
            raise StorageFailure("cache_file_missing")
        self.uploads.record_download(upload.id, is_owner)
        refreshed = self.uploads.require(upload.id)
        return Download(
            upload=refreshed,
            path=path,
            content_length=refreshed.size,
            content_disposition=content_disposition(refreshed.filename),
            mime_type=refreshed.mime_type,
        )

    def _require_owner_access(self, actor: User, owner: UploadOwner) -> None:
        if owner.is_user:
            if owner.id != actor.id and not actor.admin:
                raise Forbidden()
            return
        team = self.teams.require(owner.id)
        if not team.enabled:
            raise Forbidden("team_disabled")
        if not actor.admin and self.teams.get_member(team.id, actor.id) is None:
            raise Forbidden("not_team_member")

    def _check_quota(self, owner: UploadOwner, size: int) -> None:
        if owner.is_user:
            principal = self.session.get(User, owner.id)
        else:
            principal = self.session.get(Team, owner.id)
        if principal is None or principal.limit is None:
            return
        if self.uploads.owner_total_size(owner) + size > principal.limit:
            raise ValidationError(violations=("storage_limit_exceeded",))

    def _apply_tags(self, upload: Upload, names: Iterable[str]) -> list[str]:
        unique = list(dict.fromkeys(name.strip() for name in names if name.strip()))
        tags = [self.tags.get_or_create_for_owner(upload.owner, name) for name in unique]
        self.tags.replace_tags(upload.id, [tag.id for tag in tags])
        return unique

    def _write_stream(self, stream: BinaryIO, path: Path) -> int:
        size = 0
        try:
            with path.open("xb") as handle:
                while True:
                    chunk = stream.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    handle.write(chunk)
                    size += len(chunk)
        except OSError as exc:
            self._discard(path)
            logger.error("Failed to write cache file %s: %s", path, exc)
            raise StorageFailure("cache_write_failed") from exc
        return size

    def _transfer_files(self, old_slug: str, new_slug: str, mode: TransferMode) -> list[tuple[Path, Path]]:
        pairs = [
            (cache_path(self.cache_dir, old_slug), cache_path(self.cache_dir, new_slug)),
            (preview_path(self.cache_dir, old_slug), preview_path(self.cache_dir, new_slug)),
        ]
        done: list[tuple[Path, Path]] = []
        try:
            for source, target in pairs:
                if not source.exists():
                    if source == pairs[0][0]:
                        raise StorageFailure("cache_file_missing")
                    continue
                if mode is TransferMode.MOVE:
                    source.rename(target)
                else:
                    shutil.copyfile(source, target)
                done.append((source, target))
        except OSError as exc:
            self._revert_files(done, mode)
            raise StorageFailure("cache_transfer_failed") from exc
        except StorageFailure:
            self._revert_files(done, mode)
            raise
        return done

    def _revert_files(self, done: list[tuple[Path, Path]], mode: TransferMode) -> None:
        for source, target in reversed(done):
            try:
                if mode is TransferMode.MOVE:
                    target.rename(source)
                else:
                    target.unlink()
            except OSError:
                logger.warning("Failed to revert cache transfer %s -> %s", source, target, exc_info=True)

    def _discard(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to remove cache file %s", path, exc_info=True)

    def _publish(self, upload_ids: Sequence[uuid.UUID]) -> None:
        if self.notify is None:
            return
        self.notify(list(upload_ids))
