"""Store configuration loaded from the environment."""

from __future__ import annotations

import os
from typing import Any, Mapping, Optional
from urllib.parse import quote

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "KVSESSION_"

JOURNAL_MODES = ("DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF")
SYNCHRONOUS_LEVELS = ("OFF", "NORMAL", "FULL", "EXTRA")

STORE_SUFFIX = ".kvdb"


def _choice(value: Any, choices: tuple, field: str) -> str:
    normalized = str(value).strip().upper()
    if normalized not in choices:
        raise ValueError(f"{field} must be one of {', '.join(choices)}, got {value!r}")
    return normalized


class StoreConfig(BaseSettings):
    """Where store files live and how their SQLite connections are tuned.

    Every field can be set from a ``KVSESSION_*`` environment variable, e.g.
    ``KVSESSION_DATA_DIR`` or ``KVSESSION_JOURNAL_MODE``.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        extra="ignore",
        frozen=True,
    )

    data_dir: str = Field(default_factory=os.getcwd)
    busy_timeout_ms: int = Field(default=5000, ge=0)
    journal_mode: str = "WAL"
    synchronous: str = "NORMAL"

    @field_validator("data_dir", mode="before")
    @classmethod
    def default_data_dir(cls, value: Any) -> Any:
        return value or os.getcwd()

    @field_validator("journal_mode", mode="before")
    @classmethod
    def check_journal_mode(cls, value: Any) -> str:
        return _choice(value, JOURNAL_MODES, "journal_mode")

    @field_validator("synchronous", mode="before")
    @classmethod
    def check_synchronous(cls, value: Any) -> str:
        return _choice(value, SYNCHRONOUS_LEVELS, "synchronous")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "StoreConfig":
        """Build a config from ``KVSESSION_*`` variables.

        Values found in ``env`` take precedence over the process environment.
        """
        if env is None:
            return cls()
        settings = {
            key[len(ENV_PREFIX):].lower(): value
            for key, value in env.items()
            if key.startswith(ENV_PREFIX) and value != ""
        }
        return cls(**settings)

    def path_for(self, name: str) -> str:
        if not isinstance(name, str) or not name:
            raise ValueError("store name must be a non-empty string")
        return os.path.join(self.data_dir, quote(name, safe="") + STORE_SUFFIX)

    def engine_options(self) -> dict:
        return {
            "busy_timeout_ms": self.busy_timeout_ms,
            "journal_mode": self.journal_mode,
            "synchronous": self.synchronous,
        }
