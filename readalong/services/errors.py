from enum import StrEnum


class ErrorKind(StrEnum):
    SESSION_NOT_FOUND = 'session_not_found'
    SESSION_NOT_JOINABLE = 'session_not_joinable'
    CAPACITY_EXCEEDED = 'capacity_exceeded'
    ALREADY_JOINED = 'already_joined'
    FORBIDDEN = 'forbidden'
    INVALID_TRANSITION = 'invalid_transition'
    INTERNAL = 'internal'


class MembershipError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL
    status_code: int = 500


class SessionNotFoundError(MembershipError):
    kind = ErrorKind.SESSION_NOT_FOUND
    status_code = 404

class SessionNotJoinableError(MembershipError):
    kind = ErrorKind.SESSION_NOT_JOINABLE
    status_code = 409

class CapacityExceededError(MembershipError):
    kind = ErrorKind.CAPACITY_EXCEEDED
    status_code = 409

class AlreadyJoinedError(MembershipError):
    kind = ErrorKind.ALREADY_JOINED
    status_code = 409

class PermissionDeniedError(MembershipError):
    kind = ErrorKind.FORBIDDEN
    status_code = 403

class InvalidTransitionError(MembershipError):
    kind = ErrorKind.INVALID_TRANSITION
    status_code = 400

# transient; the only kind a caller should retry
class InternalError(MembershipError):
    kind = ErrorKind.INTERNAL
    status_code = 503

# ledger holds more active members than the session allows; needs an operator, not a retry
class LedgerInconsistencyError(InternalError):
    pass
