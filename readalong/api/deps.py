from fastapi import Request

from readalong.services.cache import SessionCache
from readalong.services.coordinator import AdmissionCoordinator
from readalong.services.lifecycle import LifecycleManager


def get_coordinator(request: Request) -> AdmissionCoordinator:
    return request.app.state.coordinator


def get_lifecycle(request: Request) -> LifecycleManager:
    return request.app.state.lifecycle


def get_session_cache(request: Request) -> SessionCache:
    return request.app.state.session_cache
