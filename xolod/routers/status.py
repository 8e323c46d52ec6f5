"""Status router for xolod.

Provides the liveness check.
"""

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

router = APIRouter(tags=["status"])


@router.get("/ping", response_class=PlainTextResponse)
def ping() -> str:
    """Liveness check.

    Returns:
        The text 'pong'
    """
    return "pong"
