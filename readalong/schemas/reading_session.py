import uuid
from enum import StrEnum
from datetime import datetime, UTC

from sqlalchemy import CheckConstraint
from sqlmodel import SQLModel, Field


class SessionStatus(StrEnum):
    ACTIVE = 'ACTIVE'
    PAUSED = 'PAUSED'
    ENDED = 'ENDED'
    CANCELLED = 'CANCELLED'


class ReadingSession(SQLModel, table=True):
    __tablename__ = 'reading_sessions'  # type: ignore[assignment]
    __table_args__ = (
        CheckConstraint('max_participants > 0', name='ck_reading_sessions_max_positive'),
        CheckConstraint(
            'participant_count >= 0 AND participant_count <= max_participants',
            name='ck_reading_sessions_count_within_capacity',
        ),
        CheckConstraint('peak_participants >= participant_count', name='ck_reading_sessions_peak_covers_count'),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    host_id: uuid.UUID = Field(index=True)
    title: str
    description: str | None = None
    is_public: bool = Field(default=True, index=True)

    status: SessionStatus = Field(default=SessionStatus.ACTIVE, index=True)
    max_participants: int
    participant_count: int = Field(default=0)
    peak_participants: int = Field(default=0)
    # bumped by every committed write; compare-and-set token for membership changes
    version: int = Field(default=0)

    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    started_at: datetime | None = None
    ended_at: datetime | None = None
