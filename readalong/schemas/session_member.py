from enum import StrEnum

import uuid
from datetime import datetime, UTC

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field

class MemberRole(StrEnum):
    HOST = 'HOST'
    MODERATOR = 'MODERATOR'
    MEMBER = 'MEMBER'

class SessionMember(SQLModel, table=True):
    __tablename__ = 'session_members'
    __table_args__ = (
        UniqueConstraint('session_id', 'participant_id', name='uq_session_members_session_participant'),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    session_id: uuid.UUID = Field(foreign_key='reading_sessions.id', index=True)
    participant_id: uuid.UUID = Field(index=True)
    role: MemberRole = Field(default=MemberRole.MEMBER)
    is_active: bool = Field(default=True, index=True)
    joined_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    left_at: datetime | None = None
