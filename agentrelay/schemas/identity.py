from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class Identity(BaseModel):
    """Authenticated user a turn runs on behalf of."""

    model_config = ConfigDict(frozen=True)

    id: int | str
    email: str | None = None
    display_name: str | None = None

    @property
    def label(self) -> str:
        return self.display_name or self.email or str(self.id)


class Tenant(BaseModel):
    """Organisation unit (division) whose data the turn may read."""

    model_config = ConfigDict(frozen=True)

    id: int | str
    name: str = Field(..., min_length=1)


__all__ = ["Identity", "Tenant"]
