from fastapi.routing import APIRouter

from .sessions import router as sessions_router

api_router = APIRouter(prefix='/api')

api_router.include_router(sessions_router)

__all__ = ['api_router']
