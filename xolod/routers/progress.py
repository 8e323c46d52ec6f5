"""Progress stream endpoints.

Callers tail the stream named in a StreamingStarted response, either as raw
text (one line per progress message, blank keepalive lines while idle) or
as server-sent events. Both end when the operation completes.
"""

import json
import logging
from typing import Annotated

from fastapi import APIRouter
from fastapi import Query
from fastapi.responses import StreamingResponse
from sse_starlette.event import ServerSentEvent
from sse_starlette.sse import EventSourceResponse

from xolo_library.progress.channel import KEEPALIVE
from xolo_library.progress.channel import STREAM_URL_PATH

from ..dependencies import ChannelDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix=STREAM_URL_PATH.rstrip("/"), tags=["progress"])

StreamFileQuery = Annotated[str, Query(description="Stream id from progress_stream_url_path")]


@router.get("/")
async def stream_progress(stream_file: StreamFileQuery, channel: ChannelDep) -> StreamingResponse:
    """Tail a progress stream as plain text.

    Raises:
        ValidationError (400): Malformed stream id
        NotFoundError (404): No such stream
    """
    channel.stream_path(stream_file)

    async def lines():
        async for line in channel.tail(stream_file):
            yield f"{line}\n"

    return StreamingResponse(lines(), media_type="text/plain")


@router.get("/events")
async def stream_progress_events(stream_file: StreamFileQuery, channel: ChannelDep) -> EventSourceResponse:
    """Tail a progress stream as server-sent events.

    Events:
        - progress: One progress line
        - keepalive: Nothing new for a while
        - complete: The operation finished; the stream closes
    """
    channel.stream_path(stream_file)

    async def event_generator():
        async for line in channel.tail(stream_file):
            if line == KEEPALIVE:
                yield ServerSentEvent(data="", event="keepalive")
            else:
                yield ServerSentEvent(data=json.dumps({"line": line}), event="progress")
        yield ServerSentEvent(data=json.dumps({"stream_file": stream_file}), event="complete")
        logger.debug(f"SSE progress stream {stream_file} complete")

    return EventSourceResponse(event_generator())
