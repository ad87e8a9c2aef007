"""Pydantic models for backend configuration."""

from typing import Literal

from pydantic import BaseModel, Field


# ============================================================================
# Configuration Models
# ============================================================================


class BackendProfile(BaseModel):
    """Storage backend profile from model_adapter.toml."""

    url: str = ""
    provider: Literal["memory", "sql"] = "sql"
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution
    default_location: str = ""  # Applied to models without a storage_location


class AdapterConfig(BaseModel):
    """Complete configuration from model_adapter.toml."""

    profiles: dict[str, BackendProfile] = Field(default_factory=dict)
    default_profile: str | None = None
    link_separator: str = "_"
