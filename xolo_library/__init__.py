"""Xolo server library.

Domain core for the title/version lifecycle orchestrator: durable object
storage, per-object locks, change logs, progress streams, clients for the
patch-metadata and device-management services, and the lifecycle engines.
"""

__version__ = "0.1.0"
