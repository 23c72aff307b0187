"""Ability engine configuration via pydantic-settings."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class AbilitySettings(BaseSettings):
    """Ability engine settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_prefix="ABILITY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Role whose assignment grants unrestricted access
    super_admin_role_name: str = "Super Admin"

    # Field callers set on records to bypass subject detection
    subject_type_field: str = "__type"

    # Catalog access
    database_url: str = "sqlite:///./data/staffing.db"
    catalog_timeout_seconds: float | None = 5.0

    # === RULESET CACHE ===
    cache_enabled: bool = False
    cache_ttl_seconds: int = 300
    cache_max_entries: int = 10000


@lru_cache
def get_settings() -> AbilitySettings:
    """Get the process-wide settings."""
    return AbilitySettings()
