import logging
import uuid
from datetime import datetime, UTC

from pydantic import BaseModel, Field
from sqlmodel import Session

from readalong.config import (
    DEFAULT_MAX_PARTICIPANTS,
    MAX_DESCRIPTION_LENGTH,
    MAX_PARTICIPANTS,
    MAX_TITLE_LENGTH,
    MIN_PARTICIPANTS,
)
from readalong.db.unit_of_work import RetriesExhaustedError, StorageError, UnitOfWork
from readalong.schemas import MemberRole, ReadingSession, SessionMember, SessionStatus
from readalong.services import ledger
from readalong.services.errors import InternalError, InvalidTransitionError, PermissionDeniedError

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({SessionStatus.ENDED, SessionStatus.CANCELLED})

ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.ACTIVE: frozenset({SessionStatus.PAUSED, SessionStatus.ENDED, SessionStatus.CANCELLED}),
    SessionStatus.PAUSED: frozenset({SessionStatus.ACTIVE, SessionStatus.ENDED, SessionStatus.CANCELLED}),
    SessionStatus.ENDED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


class CreateSessionRequest(BaseModel):
    title: str = Field(min_length=1, max_length=MAX_TITLE_LENGTH)
    description: str | None = Field(default=None, max_length=MAX_DESCRIPTION_LENGTH)
    max_participants: int = Field(default=DEFAULT_MAX_PARTICIPANTS, ge=MIN_PARTICIPANTS, le=MAX_PARTICIPANTS)
    is_public: bool = True


def is_terminal(status: SessionStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_join(reading_session: ReadingSession, allow_paused: bool = True) -> bool:
    if is_terminal(reading_session.status):
        return False
    if reading_session.status == SessionStatus.PAUSED:
        return allow_paused
    return True


def can_transition(current: SessionStatus, new: SessionStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def can_view(is_public: bool, host_id: uuid.UUID, viewer_id: uuid.UUID, member_ids=()) -> bool:
    """Private sessions are visible to their host and active members only."""
    return is_public or viewer_id == host_id or viewer_id in member_ids


def create_session(
    db: Session,
    host_id: uuid.UUID,
    data: CreateSessionRequest,
    *,
    now: datetime | None = None,
) -> ReadingSession:
    """Create an active session with its host seated as the first participant."""
    now = now or datetime.now(tz=UTC)

    reading_session = ReadingSession(
        host_id=host_id,
        title=data.title.strip(),
        description=data.description.strip() if data.description else None,
        status=SessionStatus.ACTIVE,
        max_participants=data.max_participants,
        is_public=data.is_public,
        participant_count=1,
        peak_participants=1,
        created_at=now,
        started_at=now,
    )
    host = SessionMember(
        session_id=reading_session.id,
        participant_id=host_id,
        role=MemberRole.HOST,
        is_active=True,
        joined_at=now,
    )
    db.add(reading_session)
    db.flush()
    db.add(host)
    db.commit()
    db.refresh(reading_session)

    logger.info('Session %s created by %s (capacity %d)', reading_session.id, host_id, reading_session.max_participants)
    return reading_session


def change_status(
    db: Session,
    session_id: uuid.UUID,
    actor_id: uuid.UUID,
    new_status: SessionStatus,
    *,
    now: datetime | None = None,
) -> ReadingSession:
    now = now or datetime.now(tz=UTC)

    reading_session = ledger.require_session(db, session_id)
    read_version = reading_session.version

    if reading_session.host_id != actor_id:
        raise PermissionDeniedError('Only the host can change the session status')

    current = reading_session.status
    if is_terminal(current):
        raise InvalidTransitionError('Cannot update a finished session')

    if new_status == current:
        return reading_session

    if not can_transition(current, new_status):
        raise InvalidTransitionError(f'Cannot move a session from {current} to {new_status}')

    values: dict = {'status': new_status}
    if is_terminal(new_status):
        values.update(participant_count=0, ended_at=now)
    elif new_status == SessionStatus.ACTIVE and reading_session.started_at is None:
        values['started_at'] = now

    # same compare-and-set as membership writes, so an end racing a join is ordered
    ledger.compare_and_set(db, session_id, read_version, **values)
    if is_terminal(new_status):
        released = ledger.deactivate_all(db, session_id, now)
        logger.info('Session %s finished as %s, released %d participants', session_id, new_status, released)
    db.commit()
    db.refresh(reading_session)

    logger.info('Session %s moved %s -> %s by %s', session_id, current, new_status, actor_id)
    return reading_session


def end_session(db: Session, session_id: uuid.UUID, actor_id: uuid.UUID, *, now: datetime | None = None) -> ReadingSession:
    reading_session = ledger.require_session(db, session_id)
    new_status = SessionStatus.ENDED if reading_session.started_at else SessionStatus.CANCELLED
    return change_status(db, session_id, actor_id, new_status, now=now)


class LifecycleManager:
    """Runs lifecycle changes in the unit of work and invalidates caches after commit."""

    def __init__(self, unit_of_work: UnitOfWork, invalidation=None):
        self._uow = unit_of_work
        self._invalidation = invalidation

    def create(self, host_id: uuid.UUID, data: CreateSessionRequest) -> ReadingSession:
        reading_session = self._run(lambda db: create_session(db, host_id, data), 'create session')
        self._after_commit(reading_session.id, host_id)
        return reading_session

    def change_status(self, session_id: uuid.UUID, actor_id: uuid.UUID, new_status: SessionStatus) -> ReadingSession:
        reading_session = self._run(
            lambda db: change_status(db, session_id, actor_id, new_status),
            f'status change of {session_id}',
        )
        # status shows up in every member's own session list
        self._after_commit(session_id, actor_id, all_participants=True)
        return reading_session

    def end(self, session_id: uuid.UUID, actor_id: uuid.UUID) -> ReadingSession:
        reading_session = self._run(lambda db: end_session(db, session_id, actor_id), f'end of {session_id}')
        self._after_commit(session_id, actor_id, all_participants=True)
        return reading_session

    def _run(self, work, label: str):
        try:
            return self._uow.run(work, label=label)
        except RetriesExhaustedError as e:
            raise InternalError('Session is busy, try again') from e
        except StorageError as e:
            raise InternalError('Storage unavailable') from e

    def _after_commit(self, session_id: uuid.UUID, participant_id: uuid.UUID | None, all_participants: bool = False) -> None:
        if self._invalidation is None:
            return
        try:
            self._invalidation.dispatch(session_id, participant_id, all_participants=all_participants)
        except Exception:
            logger.exception('Failed to schedule cache invalidation for session %s', session_id)
