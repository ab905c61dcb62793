import logging
import time
from typing import Callable, TypeVar

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlmodel import Session

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ConcurrentUpdateError(Exception):
    """Raised by a unit of work when its compare-and-set lost to another writer."""


class StorageError(Exception):
    pass


class StorageUnavailableError(StorageError):
    pass


class RetriesExhaustedError(StorageError):
    pass


class UnitOfWork:
    """
    Runs `work(db)` inside one database transaction, retrying on write conflicts.

    Each attempt gets a fresh Session, so a retried attempt re-reads committed
    state. The work function is responsible for committing; anything left
    uncommitted when it returns or raises is rolled back when the Session closes.

    Business exceptions raised by `work` propagate untouched. Conflicts
    (ConcurrentUpdateError, a lost uniqueness race) are retried up to
    `max_attempts` times; lock timeouts and other operational failures are
    raised as StorageUnavailableError without retry.
    """

    def __init__(self, engine: Engine, max_attempts: int = 5, backoff_s: float = 0.02):
        if max_attempts < 1:
            raise ValueError('max_attempts must be at least 1')
        self.engine = engine
        self.max_attempts = max_attempts
        self.backoff_s = backoff_s

    def session(self) -> Session:
        return Session(self.engine)

    def run(self, work: Callable[[Session], T], *, label: str = 'unit of work') -> T:
        for attempt in range(1, self.max_attempts + 1):
            with self.session() as db:
                try:
                    return work(db)
                except ConcurrentUpdateError:
                    db.rollback()
                    logger.info('%s lost a write race (attempt %d/%d)', label, attempt, self.max_attempts)
                except IntegrityError as e:
                    db.rollback()
                    logger.info('%s hit a constraint conflict (attempt %d/%d): %s', label, attempt, self.max_attempts, e.orig)
                except OperationalError as e:
                    db.rollback()
                    logger.warning('%s failed on storage: %s', label, e.orig)
                    raise StorageUnavailableError(str(e.orig)) from e
                except SQLAlchemyError as e:
                    db.rollback()
                    logger.exception('%s failed', label)
                    raise StorageError(str(e)) from e

            if attempt < self.max_attempts and self.backoff_s > 0:
                time.sleep(self.backoff_s * attempt)

        raise RetriesExhaustedError(f'{label} gave up after {self.max_attempts} attempts')
