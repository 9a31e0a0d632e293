"""Port: hosting-application data sources consumed by the SCM layer."""

from __future__ import annotations

from typing import Any, Protocol


class Project(Protocol):
    """The subset of a hosted project the SCM layer needs."""

    @property
    def shortname(self) -> str:
        """Short, URL-safe identifier used to locate the repository."""
        ...

    def get_config_value(self, key: str, default: str = "") -> str:
        """Read one per-project configuration value."""
        ...


class UserDirectory(Protocol):
    """Lookup of local user accounts."""

    def find_by_email(self, email: str) -> Any | None:
        ...

    def find_by_login(self, login: str) -> Any | None:
        ...
