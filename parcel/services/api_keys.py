from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone

from sqlalchemy import delete, select, update

from parcel.errors import Forbidden, NotFound, Unauthenticated
from parcel.models import ApiKey, User

from .store import StoreService


class ApiKeyService(StoreService):
    def create(self, owner: uuid.UUID, name: str, created_by: uuid.UUID | None = None) -> ApiKey:
        key = ApiKey(
            owner=owner,
            name=name.strip() or "API key",
            code=secrets.token_urlsafe(32),
            created_by=created_by,
        )
        self.session.add(key)
        self._commit("api_key_conflict")
        self.session.refresh(key)
        return key

    def get(self, key_id: uuid.UUID) -> ApiKey | None:
        return self.session.get(ApiKey, key_id)

    def get_by_code(self, code: str) -> ApiKey | None:
        return self.session.scalars(select(ApiKey).where(ApiKey.code == code)).first()

    def list_for_user(self, owner: uuid.UUID) -> list[ApiKey]:
        stmt = select(ApiKey).where(ApiKey.owner == owner).order_by(ApiKey.created_at, ApiKey.id)
        return list(self.session.scalars(stmt))

    def set_enabled(self, key_id: uuid.UUID, enabled: bool) -> None:
        result = self.session.execute(update(ApiKey).where(ApiKey.id == key_id).values(enabled=enabled))
        if result.rowcount == 0:
            self.session.rollback()
            raise NotFound("api_key_not_found")
        self._commit()
        self.session.expire_all()

    def delete(self, key_id: uuid.UUID) -> None:
        result = self.session.execute(delete(ApiKey).where(ApiKey.id == key_id))
        if result.rowcount == 0:
            self.session.rollback()
            raise NotFound("api_key_not_found")
        self._commit()

    def record_last_use(self, key_id: uuid.UUID, when: datetime | None = None) -> None:
        moment = when or datetime.now(timezone.utc)
        self.session.execute(update(ApiKey).where(ApiKey.id == key_id).values(last_used=moment))
        self._commit()

    def authenticate(self, code: str, now: datetime | None = None) -> tuple[ApiKey, User]:
        """Resolve a bearer code to its key and owner, recording the use."""
        key = self.get_by_code(code.strip()) if code else None
        if key is None:
            raise Unauthenticated("invalid_api_key")
        if not key.enabled:
            raise Forbidden("api_key_disabled")
        owner = self.session.get(User, key.owner)
        if owner is None or not owner.enabled:
            raise Forbidden("account_disabled")
        self.record_last_use(key.id, now)
        return key, owner
