from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from parcel.errors import StorageFailure
from parcel.models import LoginAttempt


class AuditLogger:
    def __init__(self, session: Session, logger: logging.Logger | None = None) -> None:
        self.session = session
        self.logger = logger or logging.getLogger("parcel.audit")

    def record_login_attempt(
        self,
        username: str,
        success: bool,
        attempted_at: datetime,
        ip_address: str | None = None,
    ) -> LoginAttempt:
        entry = LoginAttempt(
            username=username,
            success=success,
            attempted_at=attempted_at,
            ip_address=ip_address,
        )
        self._persist(entry, "login_attempt")
        return entry

    def _persist(self, entry: Any, category: str) -> None:
        self.session.add(entry)
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageFailure(f"failed to record {category}") from exc
        self.session.refresh(entry)
        self._log_entry(category, entry)

    def _log_entry(self, category: str, entry: Any) -> None:
        payload = {"category": category}
        for column in entry.__table__.columns:
            payload[column.name] = getattr(entry, column.name)
        self.logger.info(json.dumps(payload, default=str))
