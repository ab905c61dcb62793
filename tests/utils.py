import uuid
from concurrent.futures import Executor, Future
from datetime import datetime, timedelta, UTC

import jwt
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from readalong.config import TOKEN_ALGORITHM, TOKEN_SECRET_KEY
from readalong.schemas import MemberRole, ReadingSession, SessionMember, SessionStatus


class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def submit(self, fn, /, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except BaseException as e:
            future.set_exception(e)
        return future


class RecordingDispatcher:
    def __init__(self):
        self.calls: list[tuple[uuid.UUID, uuid.UUID | None]] = []
        self.broadcasts: list[uuid.UUID] = []

    def dispatch(self, session_id, participant_id=None, *, all_participants=False):
        self.calls.append((session_id, participant_id))
        if all_participants:
            self.broadcasts.append(session_id)


def token_for(user_id: uuid.UUID, expires_in: timedelta = timedelta(hours=1)) -> str:
    payload = {'sub': str(user_id), 'exp': datetime.now(tz=UTC) + expires_in}
    return jwt.encode(payload, TOKEN_SECRET_KEY, TOKEN_ALGORITHM)


def create_reading_session(
    db: Session,
    *,
    max_participants: int = 2,
    status: SessionStatus = SessionStatus.ACTIVE,
    host_id: uuid.UUID | None = None,
    is_public: bool = True,
    participant_count: int = 0,
    peak_participants: int = 0,
) -> ReadingSession:
    reading_session = ReadingSession(
        host_id=host_id or uuid.uuid4(),
        title='Chapter 1 read-along',
        is_public=is_public,
        status=status,
        max_participants=max_participants,
        participant_count=participant_count,
        peak_participants=peak_participants,
        started_at=datetime.now(tz=UTC),
    )
    db.add(reading_session)
    db.commit()
    db.refresh(reading_session)
    return reading_session


def add_member(
    db: Session,
    session_id: uuid.UUID,
    participant_id: uuid.UUID | None = None,
    *,
    is_active: bool = True,
    role: MemberRole = MemberRole.MEMBER,
) -> SessionMember:
    member = SessionMember(
        session_id=session_id,
        participant_id=participant_id or uuid.uuid4(),
        role=role,
        is_active=is_active,
    )
    db.add(member)
    db.commit()
    db.refresh(member)
    return member


def load_session(engine: Engine, session_id: uuid.UUID) -> ReadingSession:
    with Session(engine) as db:
        return db.get(ReadingSession, session_id)


def member_rows(engine: Engine, session_id: uuid.UUID, participant_id: uuid.UUID | None = None) -> list[SessionMember]:
    with Session(engine) as db:
        query = select(SessionMember).where(SessionMember.session_id == session_id)
        if participant_id is not None:
            query = query.where(SessionMember.participant_id == participant_id)
        return list(db.exec(query).all())


def active_count(engine: Engine, session_id: uuid.UUID) -> int:
    return sum(1 for m in member_rows(engine, session_id) if m.is_active)
