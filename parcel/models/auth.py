from __future__ import annotations

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, String, UniqueConstraint, func

from .db import Base
from .password import StoredPasswordType
from .types import KeyType, new_key
from .upload import UploadOrder


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("username", name="uq_users_username"),)

    id = Column(KeyType, primary_key=True, default=new_key)
    username = Column(String(100), nullable=False)
    name = Column(String(255), nullable=False)
    password = Column(StoredPasswordType, nullable=False)
    totp_secret = Column(String(64))
    enabled = Column(Boolean, nullable=False, default=True)
    admin = Column(Boolean, nullable=False, default=False)
    limit = Column(BigInteger)
    default_order = Column(String(16), nullable=False, default=UploadOrder.UPLOADED_AT.value)
    default_asc = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    created_by = Column(KeyType, ForeignKey("users.id"))
    last_access = Column(DateTime(timezone=True))

    @property
    def has_totp(self) -> bool:
        return bool(self.totp_secret)


class ApiKey(Base):
    __tablename__ = "api_keys"
    __table_args__ = (UniqueConstraint("code", name="uq_api_keys_code"),)

    id = Column(KeyType, primary_key=True, default=new_key)
    owner = Column(KeyType, ForeignKey("users.id"), nullable=False)
    code = Column(String(64), nullable=False)
    name = Column(String(255), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    created_by = Column(KeyType, ForeignKey("users.id"))
    last_used = Column(DateTime(timezone=True))


class LoginAttempt(Base):
    __tablename__ = "login_attempts"

    id = Column(KeyType, primary_key=True, default=new_key)
    username = Column(String(100), nullable=False, index=True)
    ip_address = Column(String(64))
    attempted_at = Column(DateTime(timezone=True), nullable=False)
    success = Column(Boolean, nullable=False, default=False)
