"""Pydantic schemas for the current-user endpoint."""
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class UserResponse(BaseModel):
    """Public profile of the authenticated user."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    email: str | None = None
    name: str | None = None
    avatar: str | None = Field(
        default=None,
        validation_alias=AliasChoices("avatar", "avatar_url"),
    )
