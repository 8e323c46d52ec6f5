"""Lifecycle engines: titles, versions and server maintenance."""

from .base import Steps
from .maintenance import MaintenanceService
from .titles import TitleEngine
from .versions import VersionEngine

__all__ = ["MaintenanceService", "Steps", "TitleEngine", "VersionEngine"]
