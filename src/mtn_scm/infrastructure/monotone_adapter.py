"""Monotone repository adapter — implements the ScmBackend port.

Every operation is one or more ``automate`` commands sent over a
:class:`~mtn_scm.infrastructure.stdio_transport.MonotoneStdio` channel;
structured answers are decoded with :mod:`mtn_scm.services.basic_io`.
"""

from __future__ import annotations

import logging
import os
import posixpath
import re
from datetime import datetime, timezone
from typing import Callable, Iterable
from urllib.parse import quote

from mtn_scm.domain.entities import (
    CertificateSet,
    CommitRecord,
    LogEntry,
    Stanza,
    TreeEntry,
)
from mtn_scm.domain.exceptions import EmptyBranchError, NotSupportedError, ScmError
from mtn_scm.domain.ports.automate_channel import AutomateChannel
from mtn_scm.domain.ports.project import Project
from mtn_scm.infrastructure.config import Settings, get_settings
from mtn_scm.infrastructure.stdio_transport import MonotoneStdio
from mtn_scm.services import basic_io

logger = logging.getLogger(__name__)

StdioFactory = Callable[[Project, Settings], AutomateChannel]


def _lines(output: str) -> list[str]:
    return [line for line in output.split("\n") if line]


def _format_date(value: str) -> str:
    """Render a ``date`` cert as UTC ``YYYY-MM-DD HH:MM:SS``."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return value
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.strftime("%Y-%m-%d %H:%M:%S")


def _author(certs: CertificateSet) -> str:
    return ", ".join(certs.get("author"))


def _date(certs: CertificateSet) -> str:
    return ", ".join(_format_date(d) for d in certs.get("date"))


def _changelog(certs: CertificateSet) -> str:
    return "\n---\n".join(certs.get("changelog"))


class MonotoneRepository:
    """Repository-level operations on one project's monotone database.

    Structurally satisfies :class:`~mtn_scm.domain.ports.scm_backend.ScmBackend`.

    Parameters
    ----------
    project:
        Hosted project; supplies the short name and per-project config.
    settings:
        Library settings, :func:`get_settings` when omitted.
    stdio_factory:
        Builds the command channel on first use.

    Certificates, branches and tags are cached for the lifetime of the
    instance.  The certificate cache grows with the number of revisions
    touched and is never evicted; revisions are immutable, so it never goes
    stale.  Branch and tag lists may, so long-lived callers should build a
    new instance to see new ones.
    """

    MIN_INTERFACE_VERSION = 12.0
    LARGE_COMMIT_THRESHOLD = 100

    def __init__(
        self,
        project: Project,
        settings: Settings | None = None,
        *,
        stdio_factory: StdioFactory = MonotoneStdio,
    ) -> None:
        self._project = project
        self._settings = settings or get_settings()
        self._stdio_factory = stdio_factory
        self._stdio: AutomateChannel | None = None
        self._cert_cache: dict[str, CertificateSet] = {}
        self._branches: dict[str, str] | None = None
        self._tags: dict[str, str] | None = None

    def __enter__(self) -> MonotoneRepository:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ── Transport lifecycle ─────────────────────────────────────────────

    @property
    def project(self) -> Project:
        return self._project

    @property
    def stdio(self) -> AutomateChannel:
        """The command channel, started on first access."""
        if self._stdio is None:
            self._stdio = self._stdio_factory(self._project, self._settings)
        return self._stdio

    def close(self) -> None:
        """Stop the backend process, if one was started."""
        if self._stdio is not None:
            self._stdio.stop()
            self._stdio = None

    def restart(self) -> None:
        """Discard the current process; the next command starts a fresh one."""
        self.close()

    # ── Repository info ─────────────────────────────────────────────────

    def get_repository_size(self) -> int:
        """Size in bytes of the local database; 0 for remote access."""
        if self._settings.mtn_db_access != "local":
            return 0
        repo = self._settings.repository_for(self._project.shortname)
        if not os.path.exists(repo):
            return 0
        return os.path.getsize(repo)

    def is_available(self) -> bool:
        """Check that the backend speaks a supported interface version."""
        try:
            out = self.stdio.exec(["interface_version"])
            return float(out.strip()) >= self.MIN_INTERFACE_VERSION
        except (ScmError, ValueError) as exc:
            logger.warning(
                "monotone backend for %s unavailable: %s", self._project.shortname, exc
            )
        return False

    # ── Selectors, branches, tags ───────────────────────────────────────

    def resolve_selector(self, selector: str) -> list[str]:
        """Expand a selector or partial id to zero, one or many revision ids."""
        return _lines(self.stdio.exec(["select", selector]))

    def is_valid_revision(self, commit: str) -> bool:
        return len(self.resolve_selector(commit)) == 1

    def get_branches(self) -> dict[str, str]:
        """Return ``{"h:<branch>": "<branch>"}`` for every branch.

        Head revisions would go stale quickly and a branch can have several,
        so the ``h:`` selector stands in for them.
        """
        if self._branches is None:
            out = self.stdio.exec(["branches"])
            self._branches = {f"h:{name}": name for name in _lines(out)}
        return dict(self._branches)

    def get_main_branch(self) -> str:
        """Return the configured master branch (``*`` if unset).

        monotone has no notion of a main branch; the configured one must
        select at least one revision.
        """
        branch = self._project.get_config_value("mtn_master_branch", "") or "*"
        if not self.resolve_selector(f"h:{branch}"):
            raise EmptyBranchError(f"Branch {branch} is empty")
        return branch

    def get_tags(self) -> dict[str, str]:
        """Return revision id → tag name."""
        if self._tags is not None:
            return dict(self._tags)

        tags: dict[str, str] = {}
        for stanza in basic_io.parse(self.stdio.exec(["tags"])):
            tag_name: str | None = None
            for line in stanza:
                if line.key == "tag":
                    tag_name = line.value
                elif line.key == "revision" and tag_name is not None:
                    tags[line.hash or ""] = tag_name
                    break

        self._tags = tags
        return dict(tags)

    def in_branches(self, commit: str, path: str | None = None) -> list[str]:
        """Branches carrying any revision *commit* selects.

        *path* is accepted for interface compatibility; monotone branches are
        not path scoped.
        """
        revs = self.resolve_selector(commit)
        if not revs:
            return []
        return self.get_unique_cert_values(revs, "branch")

    def in_tags(self, commit: str, path: str | None = None) -> list[str]:
        revs = self.resolve_selector(commit)
        if not revs:
            return []
        return self.get_unique_cert_values(revs, "tag")

    # ── Certificates ────────────────────────────────────────────────────

    def get_certificates(self, rev: str) -> CertificateSet:
        """Return the certificates of *rev*, fetched once per instance."""
        cached = self._cert_cache.get(rev)
        if cached is not None:
            return cached

        certs: dict[str, list[str]] = {}
        for stanza in basic_io.parse(self.stdio.exec(["certs", rev])):
            cert_name: str | None = None
            for line in stanza:
                # name always precedes value
                if line.key == "name":
                    cert_name = line.value
                elif line.key == "value" and cert_name is not None:
                    certs.setdefault(cert_name, []).append(line.value)
                    break

        result = CertificateSet(revision=rev, certs=certs)
        self._cert_cache[rev] = result
        return result

    def get_unique_cert_values(self, revs: Iterable[str], cert_name: str) -> list[str]:
        """Union of one certificate's values over *revs*, first-seen order."""
        values: dict[str, None] = {}
        for rev in revs:
            for value in self.get_certificates(rev).get(cert_name):
                values.setdefault(value)
        return list(values)

    # ── Trees and files ─────────────────────────────────────────────────

    def get_last_change_for(self, file: str, start_rev: str) -> str | None:
        """Revision that last changed *file*, looking back from *start_rev*.

        Only the first content mark is used; more than one is rare.
        """
        out = self.stdio.exec(["get_content_changed", start_rev, file])
        for stanza in basic_io.parse(out):
            for line in stanza:
                if line.key == "content_mark":
                    return line.hash
        return None

    def get_tree(self, commit: str, folder: str = "/") -> list[TreeEntry]:
        """List the entries one level below *folder* at *commit*."""
        revs = self.resolve_selector(commit)
        if not revs:
            return []

        folder = folder.strip("/")
        prefix = f"{folder}/" if folder else ""
        pattern = re.compile("^" + re.escape(prefix) + "([^/]+)$")

        entries: list[TreeEntry] = []
        for stanza in self._manifest(revs[0]):
            match = pattern.match(stanza[0].value)
            if match:
                entries.append(self._tree_entry(stanza, match[1], revs[0]))
        return entries

    def get_path_info(self, path: str, commit: str | None = None) -> TreeEntry | None:
        """Describe the single manifest entry at *path*, or ``None``."""
        if commit is None:
            commit = f"h:{self.get_main_branch()}"

        revs = self.resolve_selector(commit)
        if not revs:
            return None

        for stanza in self._manifest(revs[0]):
            if stanza[0].value == path:
                return self._tree_entry(stanza, posixpath.basename(path), revs[0])
        return None

    def get_file(self, entry: TreeEntry, cmd_only: bool = False) -> bytes:
        """Return the content of a file entry.

        There is no shell command equivalent to a stdio request, so
        ``cmd_only`` is not supported.
        """
        if cmd_only:
            raise NotSupportedError("cannot return a command line for a stdio backend")
        if entry.hash is None:
            raise NotSupportedError(f"{entry.fullpath!r} is a directory, not a file")
        return self._file_content(entry.hash)

    def _file_content(self, file_hash: str) -> bytes:
        return self.stdio.exec_raw(["get_file", file_hash])

    def _manifest(self, rev: str) -> list[Stanza]:
        stanzas = basic_io.parse(self.stdio.exec(["get_manifest_of", rev]))
        return [s for s in stanzas if s.key != "format_version"]

    def _tree_entry(self, stanza: Stanza, name: str, rev: str) -> TreeEntry:
        path = stanza[0].value
        file_hash: str | None = None
        size = 0
        if stanza.key == "dir":
            kind = "tree"
        else:
            kind = "blob"
            content = stanza.first("content")
            file_hash = content.hash if content is not None else None
            if file_hash:
                size = len(self._file_content(file_hash))

        history: dict[str, str] = {}
        last_rev = self.get_last_change_for(path, rev)
        if last_rev is not None:
            certs = self.get_certificates(last_rev)
            history = {
                "rev": last_rev,
                "author": _author(certs),
                "date": _date(certs),
                "log": _changelog(certs),
            }
        else:
            logger.debug("No history for %s at %s", path, rev)

        return TreeEntry(
            file=name,
            fullpath=path,
            efullpath=quote(path, safe="/"),
            type=kind,
            size=size,
            hash=file_hash,
            **history,
        )

    # ── Commits and history ─────────────────────────────────────────────

    def get_diff(self, target: str, source: str | None = None) -> str:
        """Unified diff from *source* (default: first parent) to *target*."""
        if not source:
            source = f"p:{target}"

        targets = self.resolve_selector(target)
        sources = self.resolve_selector(source)
        if not targets or not sources:
            return ""

        # a root revision has no parent to diff against
        if not sources[0]:
            return ""

        return self.stdio.exec(["content_diff"], {"r": [sources[0], targets[0]]})

    def get_commit(self, commit: str, with_diff: bool = False) -> CommitRecord | None:
        revs = self.resolve_selector(commit)
        if not revs:
            return None

        certs = self.get_certificates(revs[0])
        return CommitRecord(
            commit=revs[0],
            author=_author(certs),
            date=_date(certs),
            title=_changelog(certs),
            changes=self.get_diff(revs[0]) if with_diff else "",
        )

    def is_commit_large(self, commit: str | None = None) -> bool:
        """True when a revision adds or patches more than 100 files."""
        if not commit:
            commit = f"h:{self.get_main_branch()}"

        revs = self.resolve_selector(commit)
        if not revs:
            return False

        stanzas = basic_io.parse(self.stdio.exec(["get_revision", revs[0]]))
        touched = sum(1 for s in stanzas if s.key in ("patch", "add_file"))
        return touched > self.LARGE_COMMIT_THRESHOLD

    def get_change_log(self, commit: str | None = None, n: int = 10) -> list[LogEntry]:
        """Walk back from *commit*, collecting up to *n* entries.

        The walk keeps a horizon of unvisited revisions, topologically
        sorted whenever it holds more than one, and always continues with
        the newest.  Only revisions sharing a branch with the starting
        revision are recorded, which keeps merged-in branches out of the
        log.
        """
        if commit is None:
            commit = f"h:{self.get_main_branch()}"

        horizon = self.resolve_selector(commit)
        visited: set[str] = set()
        initial_branches: set[str] = set()
        logs: list[LogEntry] = []

        while horizon and len(logs) < n:
            if len(horizon) > 1:
                # toposort lists ancestors first
                horizon = _lines(self.stdio.exec(["toposort", *horizon]))

            rev = horizon.pop()
            visited.add(rev)
            certs = self.get_certificates(rev)
            branches = set(certs.get("branch"))

            # the first revisions of a walk may carry no branch cert
            if not initial_branches:
                initial_branches = branches

            if initial_branches & branches:
                logs.append(self._log_entry(rev, certs))
                if len(logs) >= n:
                    break

            for parent in _lines(self.stdio.exec(["parents", rev])):
                if parent not in visited and parent not in horizon:
                    horizon.append(parent)

        logger.debug("Change log from %s: %d entries", commit, len(logs))
        return logs

    @staticmethod
    def _log_entry(rev: str, certs: CertificateSet) -> LogEntry:
        split = re.split(r"[\n\r]", _changelog(certs), maxsplit=1)
        return LogEntry(
            commit=rev,
            author=_author(certs),
            date=_date(certs),
            title=split[0],
            full_message=split[1].strip() if len(split) > 1 else "",
        )
