from __future__ import annotations

import enum
from dataclasses import dataclass

from passlib.hash import argon2, pbkdf2_sha256
from sqlalchemy import String
from sqlalchemy.types import TypeDecorator

from parcel.errors import Malformed


class PasswordScheme(str, enum.Enum):
    LEGACY = "legacy"
    CURRENT = "current"


@dataclass(frozen=True)
class StoredPassword:
    """An encoded password hash tagged with the scheme that produced it.

    Legacy hashes are PBKDF2 and only kept until the owner next signs in;
    Current hashes are Argon2 and are what `new` always produces.
    """

    scheme: PasswordScheme
    encoded: str

    @classmethod
    def new(cls, plaintext: str) -> "StoredPassword":
        # passlib samples a fresh 16 byte salt per hash
        return cls(PasswordScheme.CURRENT, argon2.hash(plaintext))

    @classmethod
    def legacy(cls, plaintext: str) -> "StoredPassword":
        return cls(PasswordScheme.LEGACY, pbkdf2_sha256.hash(plaintext))

    @classmethod
    def decode(cls, encoded: str) -> "StoredPassword":
        if encoded.startswith("$argon2"):
            return cls(PasswordScheme.CURRENT, encoded)
        if encoded.startswith("$pbkdf2"):
            return cls(PasswordScheme.LEGACY, encoded)
        raise Malformed("unrecognised password hash format")

    def verify(self, plaintext: str) -> bool:
        try:
            if self.scheme is PasswordScheme.CURRENT:
                return argon2.verify(plaintext, self.encoded)
            return pbkdf2_sha256.verify(plaintext, self.encoded)
        except ValueError as exc:
            raise Malformed("corrupt password hash") from exc

    def needs_migration(self) -> bool:
        return self.scheme is PasswordScheme.LEGACY

    def __str__(self) -> str:
        return self.encoded

    def __repr__(self) -> str:
        return f"StoredPassword({self.scheme.value})"


class StoredPasswordType(TypeDecorator):
    impl = String(255)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, StoredPassword):
            return value.encoded
        return StoredPassword.decode(str(value)).encoded

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return StoredPassword.decode(value)
