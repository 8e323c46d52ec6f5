"""Object Store: durable title and version records with an in-memory cache."""

from .object_store import ITEM_UPLOADED
from .object_store import ObjectKind
from .object_store import ObjectStore

__all__ = ["ITEM_UPLOADED", "ObjectKind", "ObjectStore"]
