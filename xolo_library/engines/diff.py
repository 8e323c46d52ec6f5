"""Per-attribute diffs between a stored record and requested changes."""

from typing import Any
from typing import NamedTuple
from typing import TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ValidationError

M = TypeVar("M", bound=BaseModel)


class Change(NamedTuple):
    """One changed attribute. Unpacks as (attrib, old, new) for the change log."""

    attrib: str
    old: Any
    new: Any


def _same(old: Any, new: Any) -> bool:
    # Group and id lists are sets as far as the remote services care
    if isinstance(old, list) and isinstance(new, list):
        return sorted(map(str, old)) == sorted(map(str, new))
    if old in (None, "") and new in (None, ""):
        return True
    return old == new


def diff_attributes(current: BaseModel, requested: dict[str, Any]) -> list[Change]:
    """Changes that requested would make to current, in requested's order."""
    return [
        Change(attrib, getattr(current, attrib), new)
        for attrib, new in requested.items()
        if not _same(getattr(current, attrib), new)
    ]


def apply_changes(current: M, changes: list[Change]) -> M:
    """A copy of current with the changes applied and re-validated.

    Raises:
        ValidationError: If a new value doesn't fit its attribute
    """
    data = current.model_dump()
    data.update({change.attrib: change.new for change in changes})
    try:
        return type(current).model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(_describe(e)) from e


def _describe(error: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in detail['loc'])}: {detail['msg']}" for detail in error.errors()
    )


def changed(changes: list[Change], *attribs: str) -> bool:
    """Whether any of the named attributes is among the changes."""
    names = {change.attrib for change in changes}
    return any(attrib in names for attrib in attribs)
