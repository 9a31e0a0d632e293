"""Access URLs — where clients can pull a project's branch from."""

from __future__ import annotations

import re

from mtn_scm.domain.exceptions import EmptyBranchError
from mtn_scm.domain.ports.project import Project
from mtn_scm.infrastructure.config import Settings, get_settings
from mtn_scm.infrastructure.monotone_adapter import MonotoneRepository

_SSH_SCHEME_RE = re.compile(r"^ssh://")


def _exposed_branch(repository: MonotoneRepository, commit: str | None) -> str:
    if commit:
        revs = repository.resolve_selector(commit)
        if revs:
            # a revision without branch cert is rare but possible
            branches = repository.get_certificates(revs[0]).get("branch")
            return branches[0] if branches else "*"

    try:
        return repository.get_main_branch()
    except EmptyBranchError:
        return "*"


def get_anonymous_access_url(
    project: Project,
    commit: str | None = None,
    *,
    repository: MonotoneRepository | None = None,
    settings: Settings | None = None,
) -> str:
    """Return ``<remote url>?<branch>``, or ``""`` when no remote URL is set.

    The branch is the first ``branch`` cert of the revision *commit*
    selects, falling back to the project's main branch.
    """
    settings = settings or get_settings()
    if not settings.mtn_remote_url:
        return ""

    if repository is None:
        with MonotoneRepository(project, settings) as scm:
            branch = _exposed_branch(scm, commit)
    else:
        branch = _exposed_branch(repository, commit)

    return f"{settings.remote_url_for(project.shortname)}?{branch}"


def get_auth_access_url(
    project: Project,
    user: str,
    commit: str | None = None,
    *,
    repository: MonotoneRepository | None = None,
    settings: Settings | None = None,
) -> str:
    """Like :func:`get_anonymous_access_url`, with *user* in ``ssh://`` URLs."""
    url = get_anonymous_access_url(
        project, commit, repository=repository, settings=settings
    )
    return _SSH_SCHEME_RE.sub(lambda _: f"ssh://{user}@", url, count=1)
