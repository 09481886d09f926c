from __future__ import annotations

import logging
import uuid

from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from parcel.errors import Conflict, StorageFailure
from parcel.models import Team, User

logger = logging.getLogger("parcel.store")


class StoreService:
    """Shared session handling for the domain store services."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def _commit(self, conflict_message: str = "already_exists") -> None:
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise Conflict(conflict_message) from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("Store commit failed")
            raise StorageFailure("database_error") from exc

    def identity_slug_taken(
        self,
        slug: str,
        existing_user: uuid.UUID | None = None,
        existing_team: uuid.UUID | None = None,
    ) -> bool:
        """Whether `slug` is already used as a username or a team slug."""
        user_query = select(User.id).where(User.username == slug)
        if existing_user is not None:
            user_query = user_query.where(User.id != existing_user)
        team_query = select(Team.id).where(Team.slug == slug)
        if existing_team is not None:
            team_query = team_query.where(Team.id != existing_team)
        return bool(self.session.scalar(select(exists(user_query) | exists(team_query))))
