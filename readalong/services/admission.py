from enum import StrEnum

from readalong.schemas import ReadingSession, SessionMember


class AdmissionDecision(StrEnum):
    ADMIT = 'ADMIT'
    ALREADY_ACTIVE = 'ALREADY_ACTIVE'
    FULL = 'FULL'


def admit(reading_session: ReadingSession, existing: SessionMember | None) -> AdmissionDecision:
    """
    Decide whether `existing`'s participant may take a seat in `reading_session`.

    The caller must hold the session's version for the rest of its unit of work:
    the decision is only valid for the state it was made against.
    """
    if existing is not None and existing.is_active:
        return AdmissionDecision.ALREADY_ACTIVE

    if reading_session.participant_count >= reading_session.max_participants:
        return AdmissionDecision.FULL

    return AdmissionDecision.ADMIT


def next_peak(peak: int, new_count: int) -> int:
    return max(peak, new_count)
