"""Library configuration — loaded from environment variables."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration loaded from env vars (or ``.env`` file).

    ``mtn_remote_url`` and ``mtn_repositories`` are templates; ``{shortname}``
    is replaced by the project's short name.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    mtn_path: str = "mtn"
    mtn_opts: list[str] = []
    mtn_db_access: Literal["remote", "local"] = "remote"
    mtn_remote_url: str = ""
    mtn_repositories: str = "/home/mtn/repositories/{shortname}.mtn"
    exec_cmd_prefix: str = ""
    poll_interval: float = Field(0.02, gt=0)
    stderr_limit: int = Field(64 * 1024, ge=0)

    def remote_url_for(self, shortname: str) -> str:
        return self.mtn_remote_url.format(shortname=shortname)

    def repository_for(self, shortname: str) -> str:
        return self.mtn_repositories.format(shortname=shortname)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the singleton settings (cached after first call)."""
    return Settings()
