"""Error taxonomy for the xolo server.

Every error raised by the engines derives from XoloError and carries the HTTP
status the daemon should answer with. Routers never translate these by hand;
the exception handlers in xolod.main do it in one place.
"""


class XoloError(Exception):
    """Base class for all xolo errors."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, int | str]:
        """Standard JSON error body."""
        return {"status": self.status_code, "error": self.message}


class NotFoundError(XoloError):
    """The requested object does not exist."""

    status_code = 404


class AlreadyExistsError(XoloError):
    """An object with the same identity already exists."""

    status_code = 409


class ConflictError(XoloError):
    """The object is locked by another operation, or the state transition is invalid."""

    status_code = 409


class ValidationError(XoloError):
    """Malformed or inconsistent input."""

    status_code = 400


class ActionRequiredError(XoloError):
    """An external precondition needs manual admin action."""

    status_code = 409

    def __init__(self, message: str, approval_url: str | None = None) -> None:
        super().__init__(message)
        self.approval_url = approval_url


class UpstreamError(XoloError):
    """A call to a remote service failed."""

    status_code = 502

    def __init__(self, service: str, message: str, upstream_status: int | None = None) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
        self.upstream_status = upstream_status


class FatalError(XoloError):
    """Unexpected failure."""

    status_code = 500


class OperationCancelledError(XoloError):
    """The operation's cancel token was set between steps."""

    status_code = 409
