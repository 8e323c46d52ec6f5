"""Change log models."""

from datetime import datetime
from typing import Any

from pydantic import Field

from .base import XoloModel


class ChangeLogEntry(XoloModel):
    """One immutable change-log record."""

    time: datetime = Field(description="When the change happened")
    admin: str = Field(description="Who made the change")
    host: str | None = Field(default=None, description="Where the change came from")
    version: str | None = Field(default=None, description="Version affected, if any")
    msg: str | None = Field(default=None, description="Free-form message")
    attrib: str | None = Field(default=None, description="Attribute changed, if any")
    old: Any = None
    new: Any = None
