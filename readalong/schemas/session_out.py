import uuid
from datetime import datetime
from pydantic import BaseModel, ConfigDict

from readalong.schemas.reading_session import SessionStatus
from readalong.schemas.session_member import MemberRole

class SessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    host_id: uuid.UUID
    title: str
    description: str | None
    is_public: bool
    status: SessionStatus
    max_participants: int
    participant_count: int
    peak_participants: int
    created_at: datetime
    started_at: datetime | None
    ended_at: datetime | None


class ParticipantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    participant_id: uuid.UUID
    role: MemberRole
    joined_at: datetime


class SessionDetailOut(SessionOut):
    participants: list[ParticipantOut] = []


class SessionListOut(BaseModel):
    sessions: list[SessionOut]
    page: int
    limit: int
    total: int
    has_more: bool
