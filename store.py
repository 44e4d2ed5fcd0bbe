from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from errors import PersistenceFailure
from log import get_logger
from models import ChatMessage, ChatSession, utcnow

logger = get_logger(__name__)

TITLE_MAX_LENGTH = 30
TITLE_ELLIPSIS = "..."


def make_title(first_message: str) -> str:
    text = " ".join(first_message.split())
    if len(text) <= TITLE_MAX_LENGTH:
        return text
    return text[: TITLE_MAX_LENGTH - len(TITLE_ELLIPSIS)] + TITLE_ELLIPSIS


@dataclass(frozen=True)
class PersistResult:
    """Outcome of a best-effort write. Callers decide whether a failure matters."""

    ok: bool
    session_id: str | None = None
    error: str | None = None

    @classmethod
    def failed(cls, exc: Exception, session_id: str | None = None) -> "PersistResult":
        return cls(ok=False, session_id=session_id, error=f"{type(exc).__name__}: {exc}")


class SessionStore:
    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def ensure_session(self, existing_id: str | None, owner_id: str, first_message: str) -> PersistResult:
        if existing_id:
            return PersistResult(ok=True, session_id=existing_id)

        try:
            with self._session_factory() as db:
                s = ChatSession(title=make_title(first_message), user_id=owner_id, created_at=self._clock())
                db.add(s)
                db.commit()
                return PersistResult(ok=True, session_id=s.id)
        except SQLAlchemyError as exc:
            return PersistResult.failed(exc)

    def append_turn(self, session_id: str, role: str, content: str) -> PersistResult:
        try:
            with self._session_factory() as db:
                db.add(ChatMessage(session_id=session_id, role=role, content=content, created_at=self._clock()))
                db.commit()
        except SQLAlchemyError as exc:
            return PersistResult.failed(exc, session_id=session_id)
        return PersistResult(ok=True, session_id=session_id)

    def list_sessions(self, owner_id: str) -> list[ChatSession]:
        stmt = (
            select(ChatSession)
            .where(ChatSession.user_id == owner_id)
            .order_by(ChatSession.created_at.desc(), ChatSession.id.desc())
        )
        try:
            with self._session_factory() as db:
                return list(db.scalars(stmt))
        except SQLAlchemyError as exc:
            logger.error("list_sessions_failed", owner_id=owner_id, error=str(exc))
            raise PersistenceFailure("Could not load conversation history.") from exc

    def list_messages(self, session_id: str) -> list[ChatMessage]:
        stmt = (
            select(ChatMessage)
            .where(ChatMessage.session_id == session_id)
            .order_by(ChatMessage.id.asc())
        )
        try:
            with self._session_factory() as db:
                return list(db.scalars(stmt))
        except SQLAlchemyError as exc:
            logger.error("list_messages_failed", session_id=session_id, error=str(exc))
            raise PersistenceFailure("Could not load conversation messages.") from exc
