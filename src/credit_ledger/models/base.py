from __future__ import annotations

import types
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Mapping, Optional, Union, get_args, get_origin

from pydantic import BaseModel, ConfigDict


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for ledger store persistence
    - Provide a backend-agnostic schema description derived from fields

    The actual SQL/NoSQL DDL is produced offline by the schema generator
    using this description; nothing here touches the store at runtime.
    """

    # Enum fields hold their plain values so every backend sees scalars
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    # Logical collection / table name; subclasses must override
    collection_name: ClassVar[str]

    # Primary key field; defaults to "id"
    primary_key: ClassVar[Optional[str]] = "id"

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for persistence.

        This is the single place to control how models are stored;
        store adapters can still post-process this if needed.
        """
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.

        The schema generator runs this once (e.g. from the CLI) to produce:
        - SQL DDL for relational databases
        - JSON/metadata for NoSQL collections
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            default = field.default if field.default is not None else None
            properties[name] = {
                "type": cls._map_type(field.annotation),
                "nullable": cls._is_optional(field.annotation),
                "default": getattr(default, "value", default),
                "description": field.description,
            }

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _is_optional(annotation: Any) -> bool:
        origin = get_origin(annotation)
        if origin is Union or origin is types.UnionType:
            return type(None) in get_args(annotation)
        return False

    @classmethod
    def _map_type(cls, annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        The schema generator translates these to dialect-specific types.
        """
        origin: Any = get_origin(annotation)
        if origin is Union or origin is types.UnionType:
            inner = [a for a in get_args(annotation) if a is not type(None)]
            if len(inner) == 1:
                return cls._map_type(inner[0])
            return "object"
        if origin in (list, tuple, set):
            return "array"
        if origin is dict:
            return "object"

        if isinstance(annotation, type):
            # str-valued enums are stored as strings
            if issubclass(annotation, str):
                return "string"
            if issubclass(annotation, bool):
                return "boolean"
            if issubclass(annotation, int):
                return "integer"
            if issubclass(annotation, float):
                return "number"

        # Fallback for datetime, UUID, etc.; the generator refines by name
        name = getattr(annotation, "__name__", "object")
        return name.lower()
