"""Value objects — self-validating domain primitives."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

from mtn_scm.domain.exceptions import InvalidKeyError

_PUBKEY_RE = re.compile(r"^\[pubkey ([^\]]+)\]\s*(\S+)\s*\[end\]$")


@dataclass(frozen=True, slots=True)
class MonotonePublicKey:
    """A monotone public key as exported by ``mtn pubkey``.

    The packet looks like::

        [pubkey joe@example.com]
        MIGdMA0GCSqGSIb3DQEBAQUAA4GLADCBhwKBgQ...
        [end]

    *name* is usually an email address and need not be unique across a
    project, so authentication should rely on :attr:`key_id` instead.
    """

    name: str
    data: str

    @classmethod
    def from_string(cls, text: str) -> MonotonePublicKey:
        """Parse and validate a public key packet."""
        match = _PUBKEY_RE.match(text.strip())
        if not match:
            raise InvalidKeyError("invalid key data detected")
        return cls(name=match[1], data=match[2])

    @property
    def key_id(self) -> str:
        """SHA-1 over ``name:data``, the way monotone derives key ids."""
        return hashlib.sha1(f"{self.name}:{self.data}".encode("utf-8")).hexdigest()
