from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Iterator

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from parcel.config import Settings, load_settings
from parcel.errors import (
    Conflict,
    Forbidden,
    LockedOut,
    Malformed,
    NotFound,
    ParcelError,
    Unauthenticated,
    ValidationError,
)
from parcel.models import UploadOrder, UploadOwner, User, create_db_engine, create_session_factory, parse_key
from parcel.services import (
    VIEW,
    ApiKeyService,
    PermissionService,
    TeamService,
    UploadLifecycle,
    UploadListEntry,
    UploadService,
)
from parcel.workers import start_worker

logger = logging.getLogger("parcel.api")

MAX_PAGE_SIZE = 100
PREVIEW_MEDIA_TYPE = "image/png"

_STATUS_CODES = {
    Unauthenticated: 401,
    Forbidden: 403,
    NotFound: 404,
    Conflict: 409,
    ValidationError: 400,
    Malformed: 400,
    LockedOut: 429,
}


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return MAX_PAGE_SIZE
    return max(1, min(MAX_PAGE_SIZE, limit))


def upload_json(entry: UploadListEntry) -> dict:
    return {
        "id": str(entry.id),
        "slug": entry.slug,
        "filename": entry.filename,
        "size": entry.size,
        "public": entry.public,
        "downloads": entry.downloads,
        "limit": entry.limit,
        "remaining": entry.remaining,
        "expiryDate": entry.expiry_date.isoformat() if entry.expiry_date else None,
        "hasPassword": entry.has_password,
        "customSlug": entry.custom_slug,
        "ownerSlug": entry.owner_slug,
        "uploadedBy": entry.uploaded_by_name,
        "uploadedAt": entry.uploaded_at.isoformat() if entry.uploaded_at else None,
        "mimeType": entry.mime_type,
        "hasPreview": entry.has_preview,
        "tags": list(entry.tags),
    }


def _status_for(exc: ParcelError) -> int:
    for kind, status in _STATUS_CODES.items():
        if isinstance(exc, kind):
            return status
    return 500


def create_app(settings: Settings | None = None, run_worker: bool = True) -> FastAPI:
    settings = settings or load_settings()
    engine = create_db_engine(settings.database_url)
    SessionLocal = create_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings.ensure_directories()
        worker = task = None
        if run_worker:
            worker, task = start_worker(settings, SessionLocal)
            await worker.wait_ready()
        app.state.worker = worker
        try:
            yield
        finally:
            if worker is not None:
                worker.stop()
                await asyncio.wait({task}, timeout=5)
                await worker.wait_idle()
            engine.dispose()

    app = FastAPI(title="Parcel API", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.worker = None

    @app.exception_handler(ParcelError)
    async def parcel_error_handler(request: Request, exc: ParcelError):
        status = _status_for(exc)
        if not exc.public or status == 500:
            logger.error("Request %s %s failed: %s", request.method, request.url.path, exc.code, exc_info=exc)
            return JSONResponse(status_code=500, content={"error": "internal"})
        return JSONResponse(status_code=status, content={"error": exc.code, "message": exc.message})

    def get_session() -> Iterator[Session]:
        with SessionLocal() as session:
            yield session

    def get_actor(
        authorization: str | None = Header(default=None),
        session: Session = Depends(get_session),
    ) -> User:
        if not authorization or not authorization.lower().startswith("bearer "):
            raise Unauthenticated("missing_api_key")
        _, user = ApiKeyService(session).authenticate(authorization[7:].strip())
        return user

    def get_optional_actor(
        authorization: str | None = Header(default=None),
        session: Session = Depends(get_session),
    ) -> User | None:
        if not authorization:
            return None
        return get_actor(authorization, session)

    def notify(ids) -> None:
        worker = app.state.worker
        if worker is not None:
            worker.generate_previews(ids)

    def list_page(
        session: Session,
        owner: UploadOwner,
        offset: int,
        limit: int | None,
        sort: str | None,
        order: str | None,
        filename: str | None,
    ) -> dict:
        try:
            sort_key = UploadOrder.parse(sort) if sort else UploadOrder.UPLOADED_AT
        except ValueError as exc:
            raise ValidationError(violations=("sort",)) from exc
        if order not in (None, "asc", "desc"):
            raise ValidationError(violations=("order",))
        uploads = UploadService(session)
        page = uploads.list_for_owner(
            owner,
            search=filename,
            order=sort_key,
            ascending=order == "asc",
            offset=max(0, offset),
            limit=clamp_limit(limit),
        )
        stats = uploads.stats(owner)
        return {
            "uploads": [upload_json(entry) for entry in page.entries],
            "total": page.total,
            "stats": {
                "total": stats.total,
                "public": stats.public,
                "downloads": stats.downloads,
                "size": stats.size,
            },
        }

    @app.get("/health")
    def health():
        try:
            with app.state.engine.connect() as connection:
                connection.execute(text("select 1"))
        except Exception as exc:
            raise HTTPException(status_code=503, detail="database_unavailable") from exc
        return {"status": "ok"}

    @app.get("/api/me")
    def me(actor: User = Depends(get_actor)):
        return {"id": str(actor.id), "username": actor.username, "name": actor.name, "admin": actor.admin}

    @app.get("/api/uploads")
    def my_uploads(
        offset: int = 0,
        limit: int | None = None,
        sort: str | None = None,
        order: str | None = None,
        filename: str | None = None,
        actor: User = Depends(get_actor),
        session: Session = Depends(get_session),
    ):
        return list_page(session, UploadOwner.user(actor.id), offset, limit, sort, order, filename)

    @app.get("/api/teams")
    def my_teams(actor: User = Depends(get_actor), session: Session = Depends(get_session)):
        return {
            "teams": [
                {"id": str(team.id), "name": team.name, "slug": team.slug}
                for team in TeamService(session).teams_for_user(actor.id)
            ]
        }

    @app.get("/api/teams/{team_id}/uploads")
    def team_uploads(
        team_id: str,
        offset: int = 0,
        limit: int | None = None,
        sort: str | None = None,
        order: str | None = None,
        filename: str | None = None,
        actor: User = Depends(get_actor),
        session: Session = Depends(get_session),
    ):
        teams = TeamService(session)
        team = teams.require(parse_key(team_id))
        if not actor.admin and teams.get_member(team.id, actor.id) is None:
            raise Forbidden()
        return list_page(session, UploadOwner.team(team.id), offset, limit, sort, order, filename)

    @app.get("/api/uploads/{upload_id}")
    def upload_detail(
        upload_id: str,
        actor: User = Depends(get_actor),
        session: Session = Depends(get_session),
    ):
        uploads = UploadService(session)
        upload = uploads.require(parse_key(upload_id))
        PermissionService(session).require(upload, actor, VIEW)
        owner_slug = uploads.owner_slug(upload.owner)
        return {
            "id": str(upload.id),
            "slug": upload.slug,
            "filename": upload.filename,
            "size": upload.size,
            "public": upload.public,
            "downloads": upload.downloads,
            "limit": upload.limit,
            "remaining": upload.remaining,
            "expiryDate": upload.expiry_date.isoformat() if upload.expiry_date else None,
            "hasPassword": upload.has_password,
            "customSlug": upload.custom_slug,
            "ownerSlug": owner_slug,
            "mimeType": upload.mime_type,
            "hasPreview": upload.has_preview,
            "previewError": upload.preview_error,
        }

    @app.get("/api/uploads/{upload_id}/preview")
    def upload_preview(
        upload_id: str,
        actor: User = Depends(get_actor),
        session: Session = Depends(get_session),
    ):
        lifecycle = UploadLifecycle(session, settings.cache_dir)
        result = lifecycle.preview(parse_key(upload_id), actor)
        return FileResponse(
            result.path,
            media_type=PREVIEW_MEDIA_TYPE,
            headers={"Content-Length": str(result.content_length)},
        )

    @app.get("/uploads/{slug}")
    def download(
        slug: str,
        x_upload_password: str | None = Header(default=None),
        actor: User | None = Depends(get_optional_actor),
        session: Session = Depends(get_session),
    ):
        lifecycle = UploadLifecycle(session, settings.cache_dir, notify=notify)
        result = lifecycle.download(slug, actor, password=x_upload_password)
        headers = {
            "Content-Disposition": result.content_disposition,
            "Content-Length": str(result.content_length),
        }
        return FileResponse(
            result.path,
            media_type=result.mime_type or "application/octet-stream",
            headers=headers,
        )

    return app

