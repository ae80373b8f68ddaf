from .images import router as images_router
from .sessions import router as sessions_router

__all__ = ["images_router", "sessions_router"]
