from .reading_session import ReadingSession, SessionStatus
from .session_member import SessionMember, MemberRole
from .session_out import SessionOut, ParticipantOut, SessionDetailOut, SessionListOut
from .membership import JoinOutcome, LeaveOutcome, MembershipResult

__all__ = [
    'ReadingSession',
    'SessionStatus',
    'SessionMember',
    'MemberRole',
    'SessionOut',
    'ParticipantOut',
    'SessionDetailOut',
    'SessionListOut',
    'JoinOutcome',
    'LeaveOutcome',
    'MembershipResult',
]
