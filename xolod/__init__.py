"""xolod: the xolo server daemon.

Exposes xolo_library over a REST API with streamed progress.
"""

__version__ = "0.1.0"
