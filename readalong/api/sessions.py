import logging
import uuid
from typing import Annotated

from fastapi import Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from fastapi.routing import APIRouter
from pydantic import BaseModel
from sqlalchemy import func, or_
from sqlmodel import Session, desc, select
from starlette.concurrency import run_in_threadpool

from readalong.api.deps import get_coordinator, get_lifecycle, get_session_cache
from readalong.db.session import get_session
from readalong.schemas import (
    MembershipResult,
    ParticipantOut,
    ReadingSession,
    SessionDetailOut,
    SessionListOut,
    SessionMember,
    SessionOut,
    SessionStatus,
)
from readalong.services import ledger
from readalong.services.cache import SessionCache, participant_key, session_key, sessions_list_key
from readalong.services.coordinator import AdmissionCoordinator
from readalong.services.errors import InternalError, MembershipError
from readalong.services.lifecycle import TERMINAL_STATUSES, CreateSessionRequest, LifecycleManager, can_view
from readalong.utils.auth import get_token_user_id_http

logger = logging.getLogger(__name__)
router = APIRouter(prefix='/sessions')

DEFAULT_LIMIT = 20
MAX_LIMIT = 50


class UpdateSessionRequest(BaseModel):
    status: SessionStatus


def membership_error(e: MembershipError, participant_id: uuid.UUID) -> JSONResponse:
    result = MembershipResult.failure(e.kind.value, str(e), participant_id)
    return JSONResponse(status_code=e.status_code, content=result.model_dump(mode='json'))


def build_detail(session: Session, reading_session: ReadingSession) -> SessionDetailOut:
    members = ledger.list_active_members(session, reading_session.id)
    detail = SessionDetailOut.model_validate(reading_session)
    detail.participants = [ParticipantOut.model_validate(m) for m in members]
    return detail


@router.post('', status_code=status.HTTP_201_CREATED)
async def create_session(
    data: CreateSessionRequest,
    user_id: Annotated[uuid.UUID, Depends(get_token_user_id_http)],
    lifecycle: Annotated[LifecycleManager, Depends(get_lifecycle)],
) -> SessionOut:
    try:
        reading_session = await run_in_threadpool(lifecycle.create, user_id, data)
    except MembershipError as e:
        raise HTTPException(e.status_code, str(e))
    return SessionOut.model_validate(reading_session)


@router.get('')
async def list_sessions(
    user_id: Annotated[uuid.UUID, Depends(get_token_user_id_http)],
    cache: Annotated[SessionCache, Depends(get_session_cache)],
    status_filter: Annotated[SessionStatus | None, Query(alias='status')] = None,
    include_ended: bool = False,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=MAX_LIMIT)] = DEFAULT_LIMIT,
    session: Session = Depends(get_session),
) -> SessionListOut:
    # private sessions are listed for their host only, so the key is per caller
    cache_key = sessions_list_key(
        f'p{page}', f'l{limit}', f's{status_filter or "open"}', 'ended' if include_ended else 'live', f'u{user_id}',
    )
    cached = cache.get_json(cache_key)
    if cached is not None:
        return SessionListOut.model_validate(cached)

    generation = cache.generation()
    conditions = [or_(ReadingSession.is_public == True, ReadingSession.host_id == user_id)]
    if status_filter is not None:
        conditions.append(ReadingSession.status == status_filter)
    elif not include_ended:
        conditions.append(ReadingSession.status.not_in(list(TERMINAL_STATUSES)))

    total = session.exec(select(func.count(ReadingSession.id)).where(*conditions)).one()
    sessions = session.exec(
        select(ReadingSession)
        .where(*conditions)
        .order_by(desc(ReadingSession.created_at))
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    out = SessionListOut(
        sessions=[SessionOut.model_validate(s) for s in sessions],
        page=page,
        limit=limit,
        total=total,
        has_more=page * limit < total,
    )
    cache.set_json_if_current(cache_key, out.model_dump(mode='json'), generation)
    return out


@router.get('/mine')
async def get_my_sessions(
    user_id: Annotated[uuid.UUID, Depends(get_token_user_id_http)],
    cache: Annotated[SessionCache, Depends(get_session_cache)],
    session: Session = Depends(get_session),
) -> list[SessionOut]:
    cache_key = participant_key(user_id, 'sessions')
    cached = cache.get_json(cache_key)
    if cached is not None:
        return [SessionOut.model_validate(s) for s in cached]

    generation = cache.generation()
    sessions = session.exec(
        select(ReadingSession)
        .join(SessionMember, SessionMember.session_id == ReadingSession.id)
        .where(SessionMember.participant_id == user_id, SessionMember.is_active == True)
        .order_by(desc(ReadingSession.created_at))
    ).all()

    out = [SessionOut.model_validate(s) for s in sessions]
    cache.set_json_if_current(cache_key, [s.model_dump(mode='json') for s in out], generation)
    return out


@router.get('/{session_id}')
async def get_session_detail(
    session_id: uuid.UUID,
    user_id: Annotated[uuid.UUID, Depends(get_token_user_id_http)],
    cache: Annotated[SessionCache, Depends(get_session_cache)],
    session: Session = Depends(get_session),
) -> SessionDetailOut:
    cache_key = session_key(session_id)
    cached = cache.get_json(cache_key)
    if cached is not None:
        detail = SessionDetailOut.model_validate(cached)
    else:
        generation = cache.generation()
        reading_session = session.get(ReadingSession, session_id)
        if not reading_session:
            raise HTTPException(status.HTTP_404_NOT_FOUND, 'Session not found')

        detail = build_detail(session, reading_session)
        cache.set_json_if_current(cache_key, detail.model_dump(mode='json'), generation)

    if not can_view(detail.is_public, detail.host_id, user_id, {p.participant_id for p in detail.participants}):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "You don't have access to this private session")
    return detail


@router.patch('/{session_id}')
async def update_session_status(
    session_id: uuid.UUID,
    data: UpdateSessionRequest,
    user_id: Annotated[uuid.UUID, Depends(get_token_user_id_http)],
    lifecycle: Annotated[LifecycleManager, Depends(get_lifecycle)],
) -> SessionOut:
    try:
        reading_session = await run_in_threadpool(lifecycle.change_status, session_id, user_id, data.status)
    except MembershipError as e:
        raise HTTPException(e.status_code, str(e))
    return SessionOut.model_validate(reading_session)


@router.delete('/{session_id}')
async def end_session(
    session_id: uuid.UUID,
    user_id: Annotated[uuid.UUID, Depends(get_token_user_id_http)],
    lifecycle: Annotated[LifecycleManager, Depends(get_lifecycle)],
) -> SessionOut:
    try:
        reading_session = await run_in_threadpool(lifecycle.end, session_id, user_id)
    except MembershipError as e:
        raise HTTPException(e.status_code, str(e))
    return SessionOut.model_validate(reading_session)


@router.post('/{session_id}/join')
async def join_session(
    session_id: uuid.UUID,
    user_id: Annotated[uuid.UUID, Depends(get_token_user_id_http)],
    coordinator: Annotated[AdmissionCoordinator, Depends(get_coordinator)],
) -> MembershipResult:
    try:
        outcome = await run_in_threadpool(coordinator.join, session_id, user_id)
    except MembershipError as e:
        return membership_error(e, user_id)
    except Exception:
        logger.exception('join crash')
        return membership_error(InternalError('Internal error'), user_id)

    return MembershipResult.success(outcome)


@router.post('/{session_id}/leave')
async def leave_session(
    session_id: uuid.UUID,
    user_id: Annotated[uuid.UUID, Depends(get_token_user_id_http)],
    coordinator: Annotated[AdmissionCoordinator, Depends(get_coordinator)],
) -> MembershipResult:
    try:
        outcome = await run_in_threadpool(coordinator.leave, session_id, user_id)
    except MembershipError as e:
        return membership_error(e, user_id)
    except Exception:
        logger.exception('leave crash')
        return membership_error(InternalError('Internal error'), user_id)

    return MembershipResult.success(outcome)


@router.get('/{session_id}/participants')
async def get_session_participants(
    session_id: uuid.UUID,
    user_id: Annotated[uuid.UUID, Depends(get_token_user_id_http)],
    session: Session = Depends(get_session),
) -> list[ParticipantOut]:
    reading_session = session.get(ReadingSession, session_id)
    if not reading_session:
        raise HTTPException(status.HTTP_404_NOT_FOUND, 'Could not find session')

    members = ledger.list_active_members(session, session_id)
    member_ids = {m.participant_id for m in members}
    if not can_view(reading_session.is_public, reading_session.host_id, user_id, member_ids):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "You don't have access to this private session")
    return [ParticipantOut.model_validate(m) for m in members]
