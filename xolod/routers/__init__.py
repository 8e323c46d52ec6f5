"""API routers for the xolo daemon.

This module contains FastAPI routers for all API endpoints.
"""

from .lookups import router as lookups_router
from .maint import router as maint_router
from .progress import router as progress_router
from .status import router as status_router
from .titles import router as titles_router
from .versions import router as versions_router

__all__ = [
    "titles_router",
    "versions_router",
    "progress_router",
    "maint_router",
    "lookups_router",
    "status_router",
]
