import uuid
from typing import Literal

from pydantic import BaseModel


class JoinOutcome(BaseModel):
    membership_id: uuid.UUID
    session_id: uuid.UUID
    participant_id: uuid.UUID
    participant_count: int
    peak_participants: int
    changed: bool


class LeaveOutcome(BaseModel):
    membership_id: uuid.UUID | None
    session_id: uuid.UUID
    participant_id: uuid.UUID
    participant_count: int
    changed: bool


class MembershipResult(BaseModel):
    """Caller-facing result of a join or leave, independent of transport."""

    outcome: Literal['success', 'error']
    participant_id: uuid.UUID | None = None
    participant_count: int | None = None
    membership_id: uuid.UUID | None = None
    changed: bool = False
    error: str | None = None
    detail: str | None = None

    @classmethod
    def success(cls, result: JoinOutcome | LeaveOutcome) -> 'MembershipResult':
        return cls(
            outcome='success',
            participant_id=result.participant_id,
            participant_count=result.participant_count,
            membership_id=result.membership_id,
            changed=result.changed,
        )

    @classmethod
    def failure(cls, error: str, detail: str, participant_id: uuid.UUID | None = None) -> 'MembershipResult':
        return cls(outcome='error', participant_id=participant_id, error=error, detail=detail)
