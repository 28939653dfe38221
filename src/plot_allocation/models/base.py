from __future__ import annotations

from enum import Enum
from types import UnionType
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Union, get_args, get_origin

from pydantic import BaseModel


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model for every persisted record.

    Knows how to:
    - Serialize itself for DB persistence
    - Describe its logical schema (fields, primary key, unique indexes)
      so the schema generator can render SQL DDL or NoSQL validators offline
    """

    # Logical collection / table name; subclasses must override
    collection_name: ClassVar[str]

    primary_key: ClassVar[Optional[str]] = "id"

    # Fields that must be unique across the collection, besides the primary key
    unique_fields: ClassVar[Tuple[str, ...]] = ()

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        Enums are stored by value so documents stay readable in any backend;
        datetimes stay native so range queries keep working.
        """
        return _plain(self.model_dump(by_alias=True, exclude_none=True))

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: List[str] = []

        for name, field in fields.items():
            properties[name] = {
                "type": cls._map_type(field.annotation),
                "nullable": not field.is_required(),
                "default": field.default if isinstance(field.default, (int, float, str, bool)) else None,
                "description": field.description,
            }
            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "unique": list(cls.unique_fields),
            "properties": properties,
            "required": required,
        }

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        """
        origin: Any = get_origin(annotation)
        if origin is Union or origin is UnionType:
            members = [a for a in get_args(annotation) if a is not type(None)]
            if len(members) == 1:
                return DBSerializableModel._map_type(members[0])
            return "object"
        if origin is list or origin is tuple or origin is set:
            return "array"
        if origin is dict:
            return "object"

        if annotation is bool:
            return "boolean"
        if annotation is int:
            return "integer"
        if annotation is float:
            return "number"
        if annotation is str:
            return "string"

        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            return "object"
        if isinstance(annotation, type) and issubclass(annotation, str):
            # str-valued enums
            return "string"

        name = getattr(annotation, "__name__", "object")
        return name.lower()


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value
