"""Map free-form commit author strings to local user accounts."""

from __future__ import annotations

import re
from typing import Any

from mtn_scm.domain.ports.project import UserDirectory

_EMAIL_RE = re.compile(r"([^ ]+@[^ ]+)")


def find_author(author: str, users: UserDirectory) -> Any | None:
    """Return the user whose email, else login, matches the author's address.

    Anything that looks like an email is extracted first; authors without
    one never match.
    """
    match = _EMAIL_RE.search(author)
    if not match:
        return None

    address = match[1]
    for lookup in (users.find_by_email, users.find_by_login):
        user = lookup(address)
        if user is not None:
            return user
    return None
