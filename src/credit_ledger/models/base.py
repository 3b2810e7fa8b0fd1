from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Mapping, Optional, Union

from pydantic import BaseModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


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

    # Primary key field; every ledger entity carries a natural key
    primary_key: ClassVar[Optional[str]] = "id"

    # Extra uniqueness constraints, rendered as indexes by the generator
    unique_together: ClassVar[tuple[tuple[str, ...], ...]] = ()

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        This is the single place to control how models are stored;
        DB adapters can still post-process this if needed.
        """
        return self.model_dump(mode="python", by_alias=True, exclude_none=True)

    def db_key(self) -> str:
        return str(getattr(self, self.primary_key or "id"))

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.

        The schema generator runs this once (e.g. from a CLI) to produce:
        - SQL DDL for relational databases
        - JSON/metadata for NoSQL collections and indexes
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            # Basic JSON-style type mapping; the generator can refine this
            field_type = cls._map_type(field.annotation)

            properties[name] = {
                "type": field_type,
                "nullable": not field.is_required(),
                "default": None if field.is_required() else _jsonable_default(field.default),
                "description": field.description,
            }

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "unique_together": [list(group) for group in cls.unique_together],
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        The schema generator will translate these to dialect-specific types.
        """
        origin: Any = getattr(annotation, "__origin__", None)
        if origin is Union:
            args = [a for a in annotation.__args__ if a is not type(None)]
            if len(args) == 1:
                return DBSerializableModel._map_type(args[0])
        if origin is list or origin is tuple or origin is set:
            return "array"
        if origin is dict:
            return "object"

        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            return "object"
        if annotation is bool:
            return "boolean"
        if isinstance(annotation, type) and issubclass(annotation, int):
            return "integer"
        if annotation is float:
            return "number"
        if isinstance(annotation, type) and issubclass(annotation, str):
            return "string"

        # Fallback for datetime, Optional[...], etc.; generator can refine using metadata
        name = getattr(annotation, "__name__", "object")
        return name.lower()


def _jsonable_default(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    # Enum members and factories are described by name only
    return getattr(value, "value", None)
