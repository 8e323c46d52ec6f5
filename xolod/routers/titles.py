"""Title API endpoints.

Creating, updating, releasing, repairing and deleting a title all make many
calls to the remote services, so they run on a worker thread: the response
is a StreamingStarted naming the progress stream to tail. Validation and
lock conflicts are still reported synchronously, before the stream starts.
"""

import logging
from typing import Annotated

from fastapi import APIRouter
from fastapi import File
from fastapi import Query
from fastapi import UploadFile

from xolo_library.engines.versions import NO_CHANGES
from xolo_library.models.changelog import ChangeLogEntry
from xolo_library.models.operations import MessageResponse
from xolo_library.models.operations import PatchReportEntry
from xolo_library.models.operations import StreamingStarted
from xolo_library.models.operations import TargetsRequest
from xolo_library.models.titles import Title
from xolo_library.models.titles import TitleCreate
from xolo_library.models.titles import TitleUpdate

from ..dependencies import ContextDep
from ..dependencies import RunnerDep
from ..dependencies import TitlesDep
from ..dependencies import VersionsDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/titles", tags=["titles"])


@router.get("", response_model=list[Title])
def list_titles(titles: TitlesDep) -> list[Title]:
    return titles.list_titles()


@router.post("", status_code=202, response_model=StreamingStarted)
def create_title(spec: TitleCreate, titles: TitlesDep, runner: RunnerDep, ctx: ContextDep) -> StreamingStarted:
    """Create a title.

    Raises:
        ValidationError (400): Invalid spec, unknown groups or category
        AlreadyExistsError (409): The title exists
    """
    titles.check_create(ctx, spec)
    url = runner.start(ctx, f"create-title-{spec.title}", lambda c: titles.create(c, spec), lock_key=spec.title)
    return StreamingStarted(progress_stream_url_path=url)


@router.get("/{title}", response_model=Title)
def get_title(title: str, titles: TitlesDep) -> Title:
    return titles.get(title)


@router.put("/{title}", status_code=202, response_model=StreamingStarted | MessageResponse)
def update_title(
    title: str,
    update: TitleUpdate,
    titles: TitlesDep,
    runner: RunnerDep,
    ctx: ContextDep,
) -> StreamingStarted | MessageResponse:
    """Update a title; only fields present in the body change."""
    if not titles.check_update(ctx, title, update):
        return MessageResponse(title=title, result=NO_CHANGES)
    url = runner.start(ctx, f"update-title-{title}", lambda c: titles.update(c, title, update), lock_key=title)
    return StreamingStarted(progress_stream_url_path=url)


@router.delete("/{title}", status_code=202, response_model=StreamingStarted)
def delete_title(title: str, titles: TitlesDep, runner: RunnerDep, ctx: ContextDep) -> StreamingStarted:
    """Delete a title and all its versions."""
    titles.get(title)
    url = runner.start(ctx, f"delete-title-{title}", lambda c: titles.delete(c, title), lock_key=title)
    return StreamingStarted(progress_stream_url_path=url)


@router.patch("/{title}/release/{version}", status_code=202, response_model=StreamingStarted)
def release_version(
    title: str,
    version: str,
    titles: TitlesDep,
    versions: VersionsDep,
    runner: RunnerDep,
    ctx: ContextDep,
) -> StreamingStarted:
    """Release a version, deprecating or skipping older ones.

    Raises:
        NotFoundError (404): No such title or version
        ConflictError (409): Already released, no package uploaded, or locked
    """
    versions.check_release(title, version)
    url = runner.start(
        ctx,
        f"release-{title}-{version}",
        lambda c: titles.release(c, title, version),
        lock_key=title,
    )
    return StreamingStarted(progress_stream_url_path=url)


@router.put("/{title}/freeze", response_model=dict[str, str])
def freeze(title: str, request: TargetsRequest, titles: TitlesDep, ctx: ContextDep) -> dict[str, str]:
    """Freeze computers (or users' computers) so the title never expires on them."""
    return titles.freeze(ctx, title, request.targets, users=request.users)


@router.put("/{title}/thaw", response_model=dict[str, str])
def thaw(title: str, request: TargetsRequest, titles: TitlesDep, ctx: ContextDep) -> dict[str, str]:
    """Thaw computers; the target 'all' thaws every frozen computer."""
    return titles.thaw(ctx, title, request.targets, users=request.users)


@router.get("/{title}/frozen", response_model=dict[str, str])
def frozen(title: str, titles: TitlesDep) -> dict[str, str]:
    """Frozen computers and their users."""
    return titles.frozen(title)


@router.get("/{title}/changelog", response_model=list[ChangeLogEntry])
def changelog(title: str, titles: TitlesDep) -> list[ChangeLogEntry]:
    return titles.history(title)


@router.get("/{title}/patch-report", response_model=list[PatchReportEntry])
def patch_report(title: str, versions: VersionsDep) -> list[PatchReportEntry]:
    """Installed version of the title on every computer that has it."""
    return versions.patch_report(title)


@router.post("/{title}/ssvc-icon", response_model=Title)
def upload_ssvc_icon(
    title: str,
    file: Annotated[UploadFile, File(description="PNG, JPEG or GIF icon")],
    titles: TitlesDep,
    ctx: ContextDep,
) -> Title:
    """Store a Self Service icon and apply it to the title's Self Service policy."""
    return titles.save_ssvc_icon(ctx, title, file.filename or "", file.file.read())


@router.post("/{title}/repair", status_code=202, response_model=StreamingStarted)
def repair_title(
    title: str,
    titles: TitlesDep,
    runner: RunnerDep,
    ctx: ContextDep,
    versions: Annotated[bool, Query(description="Repair every version too")] = False,
) -> StreamingStarted:
    """Re-apply the title's remote objects from the local record."""
    titles.get(title)
    url = runner.start(
        ctx,
        f"repair-title-{title}",
        lambda c: titles.repair(c, title, repair_versions=versions),
        lock_key=title,
    )
    return StreamingStarted(progress_stream_url_path=url)
