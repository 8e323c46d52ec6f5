"""Daemon-side services: the service container and the maintenance scheduler."""

from .container import XoloServices
from .container import build_services
from .maintenance_scheduler import MaintenanceScheduler

__all__ = ["MaintenanceScheduler", "XoloServices", "build_services"]
