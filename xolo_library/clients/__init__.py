"""Clients for the remote patch-metadata and device-management services."""

from .base import ServiceClient
from .jamf import JamfClient
from .jamf import PatchPolicySpec
from .jamf import PolicySpec
from .title_editor import TitleEditorClient

__all__ = [
    "JamfClient",
    "PatchPolicySpec",
    "PolicySpec",
    "ServiceClient",
    "TitleEditorClient",
]
