"""Domain exception hierarchy.

Every failure the library can surface derives from :class:`ScmError`.
Lower layers translate ``OSError`` and friends into these; callers are
expected to map them to user-facing messages.
"""

from __future__ import annotations


class ScmError(Exception):
    """Base exception for the entire library."""


# ── Process lifecycle ───────────────────────────────────────────────────────


class StartupError(ScmError):
    """The backend process could not be spawned or its database is missing."""


class VersionMismatchError(ScmError):
    """The stdio handshake was absent or announced an unsupported version."""


# ── Wire protocol ───────────────────────────────────────────────────────────


class ProtocolError(ScmError):
    """The stdio stream could not be written or read as expected."""


class ProtocolDesyncError(ProtocolError):
    """A response chunk carried a command number other than the expected one.

    The transport is unusable afterwards; start a new one.
    """

    def __init__(self, expected: int, received: int) -> None:
        self.expected = expected
        self.received = received
        super().__init__(
            f"command numbers out of sync; expected {expected}, got {received}"
        )


class StreamClosedError(ProtocolError):
    """The backend closed its output before the command completed."""


class CommandFailedError(ProtocolError):
    """The backend finished a command with a non-zero error code.

    Attributes:
        code: The decimal error code from the terminal chunk.
        command: The framed command line that was sent.
        errors: Concatenated text of the error channel.
    """

    def __init__(self, code: int, command: str, errors: str) -> None:
        self.code = code
        self.command = command
        self.errors = errors
        super().__init__(
            f"command '{command.rstrip()}' returned error code {code}: {errors}"
        )


# ── Data ────────────────────────────────────────────────────────────────────


class BasicIOParseError(ScmError):
    """Malformed basic_io text."""

    def __init__(self, message: str, position: int) -> None:
        self.position = position
        super().__init__(f"{message} at offset {position}")


class EmptyBranchError(ScmError):
    """The configured main branch selects no revisions."""


class InvalidKeyError(ScmError):
    """A monotone public key block could not be parsed."""


# ── Capabilities ────────────────────────────────────────────────────────────


class NotSupportedError(ScmError):
    """The requested operation has no meaning for this backend."""
