"""Typed opaque identifiers persisted as canonical hyphenated UUID strings."""

from __future__ import annotations

import uuid
from typing import NewType

from sqlalchemy import String
from sqlalchemy.types import TypeDecorator

from parcel.errors import Malformed

UserId = NewType("UserId", uuid.UUID)
TeamId = NewType("TeamId", uuid.UUID)
ApiKeyId = NewType("ApiKeyId", uuid.UUID)
UploadId = NewType("UploadId", uuid.UUID)
TagId = NewType("TagId", uuid.UUID)
LoginAttemptId = NewType("LoginAttemptId", uuid.UUID)


def new_key() -> uuid.UUID:
    return uuid.uuid4()


def parse_key(value: str | uuid.UUID) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except ValueError as exc:
        raise Malformed(f"invalid identifier: {value!r}") from exc


def render_key(value: uuid.UUID) -> str:
    return str(value)


class KeyType(TypeDecorator):
    """Stores a UUID in its 36-char lowercase hyphenated form."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return render_key(parse_key(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return uuid.UUID(value)
