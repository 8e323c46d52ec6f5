"""Shared dependency factories for FastAPI endpoints.

The services are built once at startup and kept on app.state; these
factories hand them to routes. Tests replace get_services (and
get_scheduler) through app.dependency_overrides.
"""

from typing import Annotated

from fastapi import Depends
from fastapi import Header
from fastapi import Request

from xolo_library.engines.maintenance import MaintenanceService
from xolo_library.engines.titles import TitleEngine
from xolo_library.engines.versions import VersionEngine
from xolo_library.progress.channel import ProgressChannel
from xolo_library.progress.context import OperationContext
from xolo_library.progress.runner import OperationRunner

from .services.container import XoloServices
from .services.maintenance_scheduler import MaintenanceScheduler

ADMIN_HEADER = "X-Xolo-Admin"
UNKNOWN_ADMIN = "unknown"


def get_services(request: Request) -> XoloServices:
    """Get the service container from app state.

    Args:
        request: FastAPI request object

    Returns:
        XoloServices built at startup
    """
    return request.app.state.services


def get_scheduler(request: Request) -> MaintenanceScheduler | None:
    return getattr(request.app.state, "scheduler", None)


ServicesDep = Annotated[XoloServices, Depends(get_services)]


def get_title_engine(services: ServicesDep) -> TitleEngine:
    return services.titles


def get_version_engine(services: ServicesDep) -> VersionEngine:
    return services.versions


def get_maintenance(services: ServicesDep) -> MaintenanceService:
    return services.maintenance


def get_runner(services: ServicesDep) -> OperationRunner:
    return services.runner


def get_channel(services: ServicesDep) -> ProgressChannel:
    return services.channel


def get_context(
    request: Request,
    x_xolo_admin: Annotated[str | None, Header(alias=ADMIN_HEADER)] = None,
) -> OperationContext:
    """Build the operation context for a request.

    The admin comes from the X-Xolo-Admin header, the host from the client address.
    """
    host = request.client.host if request.client else None
    return OperationContext(admin=x_xolo_admin or UNKNOWN_ADMIN, host=host)


TitlesDep = Annotated[TitleEngine, Depends(get_title_engine)]
VersionsDep = Annotated[VersionEngine, Depends(get_version_engine)]
MaintenanceDep = Annotated[MaintenanceService, Depends(get_maintenance)]
RunnerDep = Annotated[OperationRunner, Depends(get_runner)]
ChannelDep = Annotated[ProgressChannel, Depends(get_channel)]
ContextDep = Annotated[OperationContext, Depends(get_context)]
SchedulerDep = Annotated[MaintenanceScheduler | None, Depends(get_scheduler)]
