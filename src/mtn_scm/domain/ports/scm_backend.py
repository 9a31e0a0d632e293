"""Port: SCM backend — the capability set a hosting application relies on."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from mtn_scm.domain.entities import LogEntry, TreeEntry


@runtime_checkable
class ScmBackend(Protocol):
    """Abstract contract implemented once per version-control backend."""

    def resolve_selector(self, selector: str) -> list[str]:
        """Expand a selector to zero, one or many revision ids."""
        ...

    def get_branches(self) -> dict[str, str]:
        """Return branch selector → branch name."""
        ...

    def get_tags(self) -> dict[str, str]:
        """Return revision id → tag name."""
        ...

    def get_tree(self, commit: str, folder: str = "/") -> list[TreeEntry]:
        """List the entries directly below *folder* at *commit*."""
        ...

    def get_file(self, entry: TreeEntry, cmd_only: bool = False) -> bytes:
        """Return the content of a file entry."""
        ...

    def get_diff(self, target: str, source: str | None = None) -> str:
        """Return a unified diff between two revisions."""
        ...

    def get_change_log(self, commit: str | None = None, n: int = 10) -> list[LogEntry]:
        """Return up to *n* log entries walking back from *commit*."""
        ...
