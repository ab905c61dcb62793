import logging
import uuid

from readalong.db.unit_of_work import RetriesExhaustedError, StorageError, UnitOfWork
from readalong.schemas import JoinOutcome, LeaveOutcome
from readalong.services import ledger
from readalong.services.cache import InvalidationDispatcher
from readalong.services.errors import AlreadyJoinedError, InternalError

logger = logging.getLogger(__name__)


class AdmissionCoordinator:
    """
    Single entry point for joining and leaving a reading session.

    Each call is one unit of work: the lifecycle gate, the admission decision
    and the ledger write all run against the same session version, and the
    unit is retried as a whole when another writer gets there first. Cache
    invalidation is dispatched only once the ledger has committed, and its
    outcome never changes the result returned here.

    Raises the MembershipError subclasses from `readalong.services.errors`.
    """

    def __init__(
        self,
        unit_of_work: UnitOfWork,
        invalidation: InvalidationDispatcher | None = None,
        *,
        allow_join_when_paused: bool = True,
        already_joined_is_error: bool = False,
    ):
        self._uow = unit_of_work
        self._invalidation = invalidation
        self.allow_join_when_paused = allow_join_when_paused
        self.already_joined_is_error = already_joined_is_error

    def join(self, session_id: uuid.UUID, participant_id: uuid.UUID) -> JoinOutcome:
        outcome = self._run(
            lambda db: ledger.join(db, session_id, participant_id, allow_paused=self.allow_join_when_paused),
            f'join of {participant_id} to {session_id}',
        )

        if not outcome.changed:
            if self.already_joined_is_error:
                raise AlreadyJoinedError('Already a participant of this session')
            return outcome

        self._after_commit(session_id, participant_id)
        return outcome

    def leave(self, session_id: uuid.UUID, participant_id: uuid.UUID) -> LeaveOutcome:
        outcome = self._run(
            lambda db: ledger.leave(db, session_id, participant_id),
            f'leave of {participant_id} from {session_id}',
        )

        if outcome.changed:
            self._after_commit(session_id, participant_id)
        return outcome

    def _run(self, work, label: str):
        try:
            return self._uow.run(work, label=label)
        except RetriesExhaustedError as e:
            logger.error('%s: %s', label, e)
            raise InternalError('Session is busy, try again') from e
        except StorageError as e:
            logger.error('%s failed on storage: %s', label, e)
            raise InternalError('Storage unavailable') from e

    def _after_commit(self, session_id: uuid.UUID, participant_id: uuid.UUID) -> None:
        if self._invalidation is None:
            return
        try:
            self._invalidation.dispatch(session_id, participant_id)
        except Exception:
            logger.exception('Failed to schedule cache invalidation for session %s', session_id)
