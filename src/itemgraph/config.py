"""
Configuration loading for itemgraph.

Settings come from a YAML file, from environment variables, or both
(environment wins):

    settings = load_settings("itemgraph.yaml")
    settings = Settings.from_env()
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class Settings:
    """Engine configuration."""
    database_url: str = "sqlite+aiosqlite:///./itemgraph.db"
    sql_echo: bool = False

    # Shared cache (redis); no url means no shared cache
    redis_url: Optional[str] = None
    cache_enabled: bool = False
    cache_schema: bool = True
    cache_auto_purge: bool = True
    cache_ttl: int = 300
    cache_namespace: str = "itemgraph"

    # Query limits; -1 means unlimited
    query_limit_default: int = 100
    relational_limit_max: int = 500
    relational_batch_size: int = 1000

    db_exclude_tables: list[str] = field(default_factory=list)

    # Action webhooks, see messaging.events.register_webhooks (YAML only)
    webhooks: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Settings":
        """Create settings from a dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_env(cls, base: Optional["Settings"] = None) -> "Settings":
        """Overlay environment variables on ``base`` (or the defaults)."""
        data = asdict(base) if base else asdict(cls())

        env_map = {
            "DATABASE_URL": ("database_url", str),
            "SQL_ECHO": ("sql_echo", _to_bool),
            "REDIS_URL": ("redis_url", str),
            "CACHE_ENABLED": ("cache_enabled", _to_bool),
            "CACHE_SCHEMA": ("cache_schema", _to_bool),
            "CACHE_AUTO_PURGE": ("cache_auto_purge", _to_bool),
            "CACHE_TTL": ("cache_ttl", int),
            "CACHE_NAMESPACE": ("cache_namespace", str),
            "QUERY_LIMIT_DEFAULT": ("query_limit_default", int),
            "RELATIONAL_LIMIT_MAX": ("relational_limit_max", int),
            "DB_EXCLUDE_TABLES": ("db_exclude_tables", _to_list),
        }
        for env_name, (key, cast) in env_map.items():
            value = os.getenv(env_name)
            if value is not None:
                data[key] = cast(value)

        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to dictionary for YAML serialization."""
        return asdict(self)

    def save(self, path: Path | str = "itemgraph.yaml") -> None:
        """Save settings to a YAML file."""
        path = Path(path)
        content = yaml.dump(self.to_dict(), default_flow_style=False, sort_keys=False)
        path.write_text(content)


def load_settings(path: Path | str = "itemgraph.yaml") -> Settings:
    """
    Load settings from a YAML file, then apply environment overrides.

    A missing file yields the defaults (plus environment).
    """
    path = Path(path)
    if not path.exists():
        return Settings.from_env()

    data = yaml.safe_load(path.read_text()) or {}
    return Settings.from_env(Settings.from_dict(data))


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the process-wide settings."""
    global _settings
    if _settings is None:
        _settings = load_settings(os.getenv("ITEMGRAPH_CONFIG", "itemgraph.yaml"))
    return _settings


def _to_bool(value: str) -> bool:
    return value.lower() in ("1", "true", "yes", "on")


def _to_list(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]
