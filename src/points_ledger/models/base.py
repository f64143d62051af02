from __future__ import annotations

import types
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IndexSpec(BaseModel):
    """Secondary index declared by a persisted model."""

    fields: Tuple[str, ...]
    unique: bool = False
    # Only rows where every indexed field is non-null participate.
    partial: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def name(self) -> str:
        suffix = "uniq" if self.unique else "idx"
        return "_".join(self.fields) + f"_{suffix}"


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields

    The actual SQL/NoSQL DDL is produced offline by the schema generator
    using this description; this class is not meant to hit the database
    at runtime for schema work.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    primary_key: ClassVar[str] = "id"

    indexes: ClassVar[Tuple[IndexSpec, ...]] = ()

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        Enum members are stored by value so documents stay plain BSON/JSON.
        """
        data = self.model_dump(by_alias=True, exclude_none=True)
        return {
            key: value.value if isinstance(value, Enum) else value
            for key, value in data.items()
        }

    @classmethod
    def from_db(cls, doc: Mapping[str, Any]):
        data = dict(doc)
        if "_id" in data:
            data.setdefault(cls.primary_key, str(data["_id"]))
            data.pop("_id")
        return cls.model_validate(data)

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.

        The schema generator runs this once (e.g. from a CLI) to produce:
        - SQL DDL for relational databases
        - JSON/metadata for NoSQL collections and indexes
        """
        properties: Dict[str, Any] = {}
        required: List[str] = []

        for name, field in cls.model_fields.items():
            field_type, nullable = cls._map_type(field.annotation)
            default = field.default if isinstance(field.default, (str, int, bool)) else None
            if isinstance(field.default, Enum):
                default = field.default.value
            properties[name] = {
                "type": field_type,
                "nullable": nullable,
                "default": default,
                "description": field.description,
            }
            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
            "indexes": [
                {"name": index.name, "fields": list(index.fields), "unique": index.unique, "partial": index.partial}
                for index in cls.indexes
            ],
        }

    @staticmethod
    def _map_type(annotation: Any) -> Tuple[str, bool]:
        """
        Map a type annotation to a generic logical type plus a nullable flag.
        The schema generator translates these to dialect-specific types.
        """
        nullable = False
        origin: Any = getattr(annotation, "__origin__", None)
        if origin is Union or isinstance(annotation, types.UnionType):
            args = [arg for arg in annotation.__args__ if arg is not type(None)]
            nullable = len(args) != len(annotation.__args__)
            annotation = args[0] if len(args) == 1 else object
            origin = getattr(annotation, "__origin__", None)

        if origin in (list, tuple, set):
            return "array", nullable
        if origin is dict or annotation is dict:
            return "object", nullable
        if isinstance(annotation, type) and issubclass(annotation, Enum):
            return "string", nullable
        if annotation is bool:
            return "boolean", nullable
        if annotation is int:
            return "integer", nullable
        if annotation is float:
            return "number", nullable
        if annotation is str:
            return "string", nullable
        if annotation is datetime:
            return "datetime", nullable
        return "object", nullable


__all__ = ["DBSerializableModel", "IndexSpec", "utcnow"]
