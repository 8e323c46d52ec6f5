"""Version API endpoints.

Mutating endpoints run on a worker thread and return a StreamingStarted,
except deploy, which reports its per-computer results directly.
"""

import logging
from typing import Annotated

from fastapi import APIRouter
from fastapi import File
from fastapi import UploadFile

from xolo_library.engines.versions import NO_CHANGES
from xolo_library.models.operations import DeployRequest
from xolo_library.models.operations import DeployResult
from xolo_library.models.operations import MessageResponse
from xolo_library.models.operations import PatchReportEntry
from xolo_library.models.operations import StreamingStarted
from xolo_library.models.versions import Version
from xolo_library.models.versions import VersionCreate
from xolo_library.models.versions import VersionUpdate

from ..dependencies import ContextDep
from ..dependencies import RunnerDep
from ..dependencies import VersionsDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/titles/{title}/versions", tags=["versions"])


@router.get("", response_model=list[Version])
def list_versions(title: str, versions: VersionsDep) -> list[Version]:
    """Versions of a title, newest first."""
    return versions.list_versions(title)


@router.post("", status_code=202, response_model=StreamingStarted)
def create_version(
    title: str,
    spec: VersionCreate,
    versions: VersionsDep,
    runner: RunnerDep,
    ctx: ContextDep,
) -> StreamingStarted:
    """Create a version in pilot.

    Raises:
        NotFoundError (404): No such title
        AlreadyExistsError (409): The version exists
        ValidationError (400): Invalid OS bounds, kill apps or pilot groups
    """
    versions.check_create(ctx, title, spec)
    url = runner.start(
        ctx,
        f"create-version-{title}-{spec.version}",
        lambda c: versions.create(c, title, spec),
        lock_key=(title, spec.version),
    )
    return StreamingStarted(progress_stream_url_path=url)


@router.get("/{version}", response_model=Version)
def get_version(title: str, version: str, versions: VersionsDep) -> Version:
    return versions.get(title, version)


@router.put("/{version}", status_code=202, response_model=StreamingStarted | MessageResponse)
def update_version(
    title: str,
    version: str,
    update: VersionUpdate,
    versions: VersionsDep,
    runner: RunnerDep,
    ctx: ContextDep,
) -> StreamingStarted | MessageResponse:
    if not versions.check_update(ctx, title, version, update):
        return MessageResponse(title=title, version=version, result=NO_CHANGES)
    url = runner.start(
        ctx,
        f"update-version-{title}-{version}",
        lambda c: versions.update(c, title, version, update),
        lock_key=(title, version),
    )
    return StreamingStarted(progress_stream_url_path=url)


@router.delete("/{version}", status_code=202, response_model=StreamingStarted)
def delete_version(title: str, version: str, versions: VersionsDep, runner: RunnerDep, ctx: ContextDep) -> StreamingStarted:
    versions.get(title, version)
    url = runner.start(
        ctx,
        f"delete-version-{title}-{version}",
        lambda c: versions.delete(c, title, version),
        lock_key=(title, version),
    )
    return StreamingStarted(progress_stream_url_path=url)


@router.post("/{version}/pkg", status_code=202, response_model=StreamingStarted)
def upload_pkg(
    title: str,
    version: str,
    file: Annotated[UploadFile, File(description="Installer .pkg, or a zipped bundle package")],
    versions: VersionsDep,
    runner: RunnerDep,
    ctx: ContextDep,
) -> StreamingStarted:
    """Upload the version's installer package.

    The file is staged before the stream starts; signing, inspection and the
    upload to Jamf Pro are reported on the stream.
    """
    upload_name = file.filename or ""
    staged = versions.stage_upload(title, version, upload_name, file.file)
    try:
        url = runner.start(
            ctx,
            f"upload-pkg-{title}-{version}",
            lambda c: versions.upload_package(c, title, version, staged, upload_name),
            lock_key=(title, version),
        )
    except Exception:
        staged.unlink(missing_ok=True)
        raise
    return StreamingStarted(progress_stream_url_path=url)


@router.patch("/{version}/skip", status_code=202, response_model=StreamingStarted)
def skip_version(title: str, version: str, versions: VersionsDep, runner: RunnerDep, ctx: ContextDep) -> StreamingStarted:
    """Mark a pilot version as never to be released."""
    versions.get(title, version)
    url = runner.start(
        ctx,
        f"skip-{title}-{version}",
        lambda c: versions.skip(c, title, version),
        lock_key=(title, version),
    )
    return StreamingStarted(progress_stream_url_path=url)


@router.patch("/{version}/deprecate", status_code=202, response_model=StreamingStarted)
def deprecate_version(
    title: str,
    version: str,
    versions: VersionsDep,
    runner: RunnerDep,
    ctx: ContextDep,
) -> StreamingStarted:
    """Deprecate the released version without releasing another."""
    versions.get(title, version)
    url = runner.start(
        ctx,
        f"deprecate-{title}-{version}",
        lambda c: versions.deprecate(c, title, version),
        lock_key=(title, version),
    )
    return StreamingStarted(progress_stream_url_path=url)


@router.post("/{version}/deploy", response_model=DeployResult, response_model_by_alias=True)
def deploy(
    title: str,
    version: str,
    request: DeployRequest,
    versions: VersionsDep,
    ctx: ContextDep,
) -> DeployResult:
    """Install the version's package on computers via MDM."""
    return versions.deploy_via_mdm(ctx, title, version, computers=request.computers, groups=request.groups)


@router.get("/{version}/patch-report", response_model=list[PatchReportEntry])
def patch_report(title: str, version: str, versions: VersionsDep) -> list[PatchReportEntry]:
    """Computers reporting this version installed."""
    return versions.patch_report(title, version)


@router.post("/{version}/repair", status_code=202, response_model=StreamingStarted)
def repair_version(title: str, version: str, versions: VersionsDep, runner: RunnerDep, ctx: ContextDep) -> StreamingStarted:
    versions.get(title, version)
    url = runner.start(
        ctx,
        f"repair-version-{title}-{version}",
        lambda c: versions.repair(c, title, version),
        lock_key=(title, version),
    )
    return StreamingStarted(progress_stream_url_path=url)
