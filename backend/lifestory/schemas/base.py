"""Base schema configuration."""

from uuid import UUID

from pydantic import BaseModel, ConfigDict


class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,  # Enable ORM mode
        str_strip_whitespace=True,
        validate_assignment=True,
    )


class IDMixin(BaseModel):
    """Mixin for UUID primary key."""

    id: UUID


class FrozenSchema(BaseModel):
    """Immutable value object. Replace with model_copy(update=...) instead of mutating."""

    model_config = ConfigDict(
        from_attributes=True,
        frozen=True,
    )
