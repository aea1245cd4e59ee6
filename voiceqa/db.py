"""
Database abstraction for SQLite/Postgres and an in-memory test implementation.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    TypeDecorator,
    create_engine,
    event,
    false,
    func,
    select,
    update,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import (
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from voiceqa.errors import (
    AlreadyAnswered,
    ForeignKeyViolation,
    InvalidInput,
    PersistenceFailure,
    StoreFailure,
    StoreUnavailable,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DbClient(Protocol):
    """Interface for question/response persistence."""

    def list_questions(self) -> List["QuestionRecord"]:
        ...

    def get_question(self, question_id: int) -> Optional["QuestionRecord"]:
        ...

    def create_question(self, text: Optional[str]) -> "QuestionRecord":
        ...

    def record_response(
        self, question_id: int, audio_url: str, *, allow_reanswer: bool = True
    ) -> "ResponseRecord":
        ...

    def list_responses(self, question_id: int) -> List[tuple[str, datetime]]:
        ...

    def close(self) -> None:
        ...


@dataclass
class QuestionRecord:
    id: int
    text: str
    answered: bool = False

    def as_dict(self) -> dict:
        return {"id": self.id, "text": self.text, "answered": self.answered}


@dataclass
class ResponseRecord:
    id: int
    question_id: int
    audio_url: str
    created_at: datetime = field(default_factory=_utcnow)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "questionId": self.question_id,
            "audioUrl": self.audio_url,
            "createdAt": self.created_at,
        }


def _require_text(text: Optional[str]) -> str:
    if text is None or not str(text).strip():
        raise InvalidInput("text is required")
    return text


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.questions: Dict[int, QuestionRecord] = {}
        self.responses: Dict[int, ResponseRecord] = {}
        self._lock = threading.Lock()
        self._next_question_id = 1
        self._next_response_id = 1

    def list_questions(self) -> List[QuestionRecord]:
        with self._lock:
            return [
                QuestionRecord(q.id, q.text, q.answered)
                for _, q in sorted(self.questions.items())
            ]

    def get_question(self, question_id: int) -> Optional[QuestionRecord]:
        with self._lock:
            question = self.questions.get(question_id)
            if not question:
                return None
            return QuestionRecord(question.id, question.text, question.answered)

    def create_question(self, text: Optional[str]) -> QuestionRecord:
        text = _require_text(text)
        with self._lock:
            record = QuestionRecord(id=self._next_question_id, text=text)
            self.questions[record.id] = record
            self._next_question_id += 1
            return QuestionRecord(record.id, record.text, record.answered)

    def record_response(
        self, question_id: int, audio_url: str, *, allow_reanswer: bool = True
    ) -> ResponseRecord:
        with self._lock:
            question = self.questions.get(question_id)
            if question is None:
                raise ForeignKeyViolation(
                    f"question {question_id} does not exist"
                )
            if question.answered and not allow_reanswer:
                raise AlreadyAnswered(f"question {question_id} is already answered")
            record = ResponseRecord(
                id=self._next_response_id,
                question_id=question_id,
                audio_url=audio_url,
            )
            self.responses[record.id] = record
            self._next_response_id += 1
            question.answered = True
            return record

    def list_responses(self, question_id: int) -> List[tuple[str, datetime]]:
        with self._lock:
            matching = [
                r for r in self.responses.values() if r.question_id == question_id
            ]
        matching.sort(key=lambda r: (r.created_at, r.id))
        return [(r.audio_url, r.created_at) for r in matching]

    def close(self) -> None:
        pass


def normalize_database_url(database_url: str) -> str:
    # Heroku still hands out the pre-SQLAlchemy-1.4 scheme.
    if database_url.startswith("postgres://"):
        return "postgresql://" + database_url[len("postgres://"):]
    return database_url


FOREIGN_KEY_VIOLATION_PGCODE = "23503"


def integrity_failure(exc: IntegrityError, question_id: int) -> PersistenceFailure:
    orig = exc.orig
    if getattr(orig, "pgcode", None) == FOREIGN_KEY_VIOLATION_PGCODE or (
        "foreign key" in str(orig).lower()
    ):
        return ForeignKeyViolation(f"question {question_id} does not exist")
    return PersistenceFailure(f"could not record response: {orig}")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class SqlDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (Postgres, or SQLite
    as a file or in memory).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDbClient")
        url = make_url(normalize_database_url(database_url))
        engine_kwargs: dict = {"future": True}

        if url.get_backend_name() == "sqlite":
            if url.database and url.database != ":memory:":
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
            else:
                # One shared connection, otherwise every thread sees an empty database.
                engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        else:
            engine_kwargs["pool_pre_ping"] = True
            engine_kwargs["pool_recycle"] = 1800

        self.engine = create_engine(url, **engine_kwargs)
        if url.get_backend_name() == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        try:
            Base.metadata.create_all(self.engine)
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable(f"database unavailable: {exc}") from exc
        logger.info("Store ready: %s", url.render_as_string(hide_password=True))

    @staticmethod
    def _to_question(row: "QuestionRow") -> QuestionRecord:
        return QuestionRecord(id=row.id, text=row.text, answered=bool(row.answered))

    @staticmethod
    def _store_failure(exc: SQLAlchemyError) -> StoreFailure:
        if isinstance(exc, (OperationalError, InterfaceError)):
            return StoreUnavailable(f"database unavailable: {exc}")
        return StoreFailure(f"database error: {exc}")

    def list_questions(self) -> List[QuestionRecord]:
        try:
            with self.Session() as session:
                rows = session.execute(
                    select(QuestionRow).order_by(QuestionRow.id.asc())
                ).scalars()
                return [self._to_question(row) for row in rows]
        except SQLAlchemyError as exc:
            raise self._store_failure(exc) from exc

    def get_question(self, question_id: int) -> Optional[QuestionRecord]:
        try:
            with self.Session() as session:
                row = session.get(QuestionRow, question_id)
                return self._to_question(row) if row else None
        except SQLAlchemyError as exc:
            raise self._store_failure(exc) from exc

    def create_question(self, text: Optional[str]) -> QuestionRecord:
        text = _require_text(text)
        try:
            with self.Session() as session:
                row = QuestionRow(text=text, answered=False)
                session.add(row)
                session.commit()
                session.refresh(row)
                return self._to_question(row)
        except SQLAlchemyError as exc:
            raise self._store_failure(exc) from exc

    def record_response(
        self, question_id: int, audio_url: str, *, allow_reanswer: bool = True
    ) -> ResponseRecord:
        """
        Flag the question answered and insert the response in one transaction.

        The flag update runs first and takes the question's row lock, so with
        ``allow_reanswer=False`` concurrent submissions serialize on it and
        only the first one matches ``answered = false``.
        """
        try:
            with self.Session.begin() as session:
                stmt = update(QuestionRow).where(QuestionRow.id == question_id)
                if not allow_reanswer:
                    stmt = stmt.where(QuestionRow.answered == false())
                result = session.execute(stmt.values(answered=True))
                if result.rowcount == 0:
                    if (
                        not allow_reanswer
                        and session.get(QuestionRow, question_id) is not None
                    ):
                        raise AlreadyAnswered(
                            f"question {question_id} is already answered"
                        )
                    raise ForeignKeyViolation(
                        f"question {question_id} does not exist"
                    )
                row = ResponseRow(
                    question_id=question_id,
                    audio_url=audio_url,
                    created_at=_utcnow(),
                )
                session.add(row)
                session.flush()
                return ResponseRecord(
                    id=row.id,
                    question_id=row.question_id,
                    audio_url=row.audio_url,
                    created_at=row.created_at,
                )
        except IntegrityError as exc:
            raise integrity_failure(exc, question_id) from exc
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"could not record response: {exc}") from exc

    def list_responses(self, question_id: int) -> List[tuple[str, datetime]]:
        try:
            with self.Session() as session:
                rows = session.execute(
                    select(ResponseRow.audio_url, ResponseRow.created_at)
                    .where(ResponseRow.question_id == question_id)
                    .order_by(ResponseRow.created_at.asc(), ResponseRow.id.asc())
                ).all()
                return [(audio_url, created_at) for audio_url, created_at in rows]
        except SQLAlchemyError as exc:
            raise self._store_failure(exc) from exc

    def close(self) -> None:
        self.engine.dispose()


class UtcDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes, also on SQLite which drops the offset."""

    impl = DateTime
    cache_ok = True

    @staticmethod
    def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_bind_param(self, value, dialect):
        return self._as_utc(value)

    def process_result_value(self, value, dialect):
        return self._as_utc(value)


Base = declarative_base()


class QuestionRow(Base):
    __tablename__ = "questions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    text = Column(String, nullable=False)
    answered = Column(Boolean, nullable=False, default=False, server_default=false())


class ResponseRow(Base):
    __tablename__ = "responses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    question_id = Column(
        Integer,
        ForeignKey("questions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    audio_url = Column(String, nullable=False)
    created_at = Column(
        UtcDateTime(timezone=True), nullable=False, server_default=func.now()
    )
