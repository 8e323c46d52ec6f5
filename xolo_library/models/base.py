"""Base models for storage and API serialization."""

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic.alias_generators import to_camel


class XoloModel(BaseModel):
    """Base model for stored records and request bodies (snake_case JSON)."""

    model_config = ConfigDict(
        populate_by_name=True,
        validate_assignment=True,
    )


class CamelCaseModel(BaseModel):
    """Base model for API responses using camelCase JSON serialization."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )
