import logging
import uuid
from datetime import datetime, UTC

from sqlalchemy import func, update
from sqlmodel import Session, select

from readalong.db.unit_of_work import ConcurrentUpdateError
from readalong.schemas import JoinOutcome, LeaveOutcome, MemberRole, ReadingSession, SessionMember
from readalong.services import admission, lifecycle
from readalong.services.admission import AdmissionDecision
from readalong.services.errors import (
    CapacityExceededError,
    LedgerInconsistencyError,
    SessionNotFoundError,
    SessionNotJoinableError,
)

logger = logging.getLogger(__name__)


def require_session(db: Session, session_id: uuid.UUID) -> ReadingSession:
    reading_session = db.get(ReadingSession, session_id)
    if not reading_session:
        raise SessionNotFoundError('Session not found')
    return reading_session


def get_member(db: Session, session_id: uuid.UUID, participant_id: uuid.UUID) -> SessionMember | None:
    return db.exec(
        select(SessionMember)
        .where(
            SessionMember.session_id == session_id,
            SessionMember.participant_id == participant_id,
        )
    ).first()


def count_active_members(db: Session, session_id: uuid.UUID) -> int:
    return db.exec(
        select(func.count(SessionMember.id))
        .where(SessionMember.session_id == session_id, SessionMember.is_active == True)
    ).one()


def list_active_members(db: Session, session_id: uuid.UUID) -> list[SessionMember]:
    members = db.exec(
        select(SessionMember)
        .where(SessionMember.session_id == session_id, SessionMember.is_active == True)
        .order_by(SessionMember.joined_at)
    ).all()
    return list(members)


def ensure_version(db: Session, session_id: uuid.UUID, expected_version: int) -> None:
    """Fail the unit of work if the session row moved since it was read."""
    current = db.exec(select(ReadingSession.version).where(ReadingSession.id == session_id)).first()
    if current != expected_version:
        raise ConcurrentUpdateError(f'Session {session_id} changed while reading (v{expected_version} -> v{current})')


def compare_and_set(db: Session, session_id: uuid.UUID, expected_version: int, **values) -> int:
    """
    Write `values` to the session row only if its version is still `expected_version`.

    This is the first write of every membership transaction. On PostgreSQL the
    UPDATE takes the row lock and re-checks the version after any concurrent
    writer commits; on SQLite it takes the database write lock. Either way the
    loser sees zero affected rows and the whole unit of work is retried.
    """
    result = db.execute(
        update(ReadingSession)
        .where(ReadingSession.id == session_id, ReadingSession.version == expected_version)
        .values(version=expected_version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentUpdateError(f'Session {session_id} was modified concurrently (expected v{expected_version})')
    return expected_version + 1


def deactivate_all(db: Session, session_id: uuid.UUID, now: datetime) -> int:
    result = db.execute(
        update(SessionMember)
        .where(SessionMember.session_id == session_id, SessionMember.is_active == True)
        .values(is_active=False, left_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _reconcile(
    db: Session,
    session_id: uuid.UUID,
    expected_count: int,
    peak: int,
    max_participants: int,
) -> tuple[int, int]:
    # counters are derived from the ledger; verify before commit
    actual = count_active_members(db, session_id)
    if actual == expected_count:
        return expected_count, peak

    if actual > max_participants:
        logger.error(
            'Session %s ledger has %d active members over capacity %d, refusing to commit',
            session_id, actual, max_participants,
        )
        raise LedgerInconsistencyError('Session membership is inconsistent')

    corrected_peak = admission.next_peak(peak, actual)
    logger.warning(
        'Participant count drift on session %s: counter=%d ledger=%d, correcting',
        session_id, expected_count, actual,
    )
    db.execute(
        update(ReadingSession)
        .where(ReadingSession.id == session_id)
        .values(participant_count=actual, peak_participants=corrected_peak)
        .execution_options(synchronize_session=False)
    )
    return actual, corrected_peak


def join(
    db: Session,
    session_id: uuid.UUID,
    participant_id: uuid.UUID,
    *,
    allow_paused: bool = True,
    now: datetime | None = None,
) -> JoinOutcome:
    now = now or datetime.now(tz=UTC)

    reading_session = require_session(db, session_id)
    read_version = reading_session.version

    if not lifecycle.can_join(reading_session, allow_paused=allow_paused):
        raise SessionNotJoinableError(f'Session is {reading_session.status.lower()}')

    member = get_member(db, session_id, participant_id)
    decision = admission.admit(reading_session, member)

    if decision == AdmissionDecision.ALREADY_ACTIVE:
        ensure_version(db, session_id, read_version)
        return JoinOutcome(
            membership_id=member.id,
            session_id=session_id,
            participant_id=participant_id,
            participant_count=reading_session.participant_count,
            peak_participants=reading_session.peak_participants,
            changed=False,
        )

    if decision == AdmissionDecision.FULL:
        ensure_version(db, session_id, read_version)
        logger.info(
            'Join rejected for %s: session %s at capacity (%d/%d)',
            participant_id, session_id, reading_session.participant_count, reading_session.max_participants,
        )
        raise CapacityExceededError(
            f'Session is full ({reading_session.participant_count}/{reading_session.max_participants})'
        )

    new_count = reading_session.participant_count + 1
    new_peak = admission.next_peak(reading_session.peak_participants, new_count)
    compare_and_set(db, session_id, read_version, participant_count=new_count, peak_participants=new_peak)

    if member is None:
        member = SessionMember(
            session_id=session_id,
            participant_id=participant_id,
            role=MemberRole.MEMBER,
            is_active=True,
            joined_at=now,
        )
    else:
        member.is_active = True
        member.joined_at = now
        member.left_at = None
    db.add(member)
    db.flush()

    new_count, new_peak = _reconcile(db, session_id, new_count, new_peak, reading_session.max_participants)
    membership_id = member.id
    db.commit()

    logger.info('Participant %s joined session %s (%d/%d)', participant_id, session_id, new_count, reading_session.max_participants)
    return JoinOutcome(
        membership_id=membership_id,
        session_id=session_id,
        participant_id=participant_id,
        participant_count=new_count,
        peak_participants=new_peak,
        changed=True,
    )


def leave(
    db: Session,
    session_id: uuid.UUID,
    participant_id: uuid.UUID,
    *,
    now: datetime | None = None,
) -> LeaveOutcome:
    now = now or datetime.now(tz=UTC)

    reading_session = require_session(db, session_id)
    read_version = reading_session.version
    member = get_member(db, session_id, participant_id)

    if member is None or not member.is_active:
        ensure_version(db, session_id, read_version)
        return LeaveOutcome(
            membership_id=member.id if member else None,
            session_id=session_id,
            participant_id=participant_id,
            participant_count=reading_session.participant_count,
            changed=False,
        )

    new_count = reading_session.participant_count - 1
    if new_count < 0:
        logger.warning(
            'Participant count for session %s would go negative on leave by %s, clamping to 0',
            session_id, participant_id,
        )
        new_count = 0
    compare_and_set(db, session_id, read_version, participant_count=new_count)

    member.is_active = False
    member.left_at = now
    db.add(member)
    db.flush()

    new_count, _ = _reconcile(
        db, session_id, new_count, reading_session.peak_participants, reading_session.max_participants,
    )
    membership_id = member.id
    db.commit()

    logger.info('Participant %s left session %s (%d/%d)', participant_id, session_id, new_count, reading_session.max_participants)
    return LeaveOutcome(
        membership_id=membership_id,
        session_id=session_id,
        participant_id=participant_id,
        participant_count=new_count,
        changed=True,
    )
