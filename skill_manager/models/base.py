"""JsonModel base class for persisted documents."""

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class JsonModel(BaseModel):
    """Base model with camelCase/snake_case conversion.

    - Persisted JSON uses camelCase
    - Internal Python uses snake_case
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def model_dump(self, **kwargs) -> dict:
        """Override model_dump - JSON-compatible values for internal use."""
        kwargs.setdefault("mode", "json")
        return super().model_dump(**kwargs)

    def model_dump_json(self, **kwargs) -> str:
        """Override to ensure camelCase in JSON output."""
        kwargs.setdefault("by_alias", True)
        return super().model_dump_json(**kwargs)

    def to_json(self, by_alias: bool = True, pretty: bool = False) -> str:
        """Serialize to JSON string."""
        return self.model_dump_json(
            indent=2 if pretty else None, exclude_none=True, by_alias=by_alias
        )

    def to_document(self) -> dict[str, Any]:
        """Dump as a camelCase dict suitable for writing to disk."""
        return self.model_dump(by_alias=True, exclude_none=True)


class FrozenModel(JsonModel):
    """Immutable variant for values that must not change once parsed."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )
