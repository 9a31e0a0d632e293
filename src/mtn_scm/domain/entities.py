"""Domain entities — pure data structures with no external dependencies."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator


class Channel(str, Enum):
    """Chunk channels of the ``automate stdio`` response stream."""

    MAIN = "m"
    WARNING = "w"
    PROGRESS = "p"
    TICKER = "t"
    ERROR = "e"
    LAST = "l"


OUT_OF_BAND_CHANNELS: tuple[Channel, ...] = (
    Channel.WARNING,
    Channel.PROGRESS,
    Channel.TICKER,
    Channel.ERROR,
)


@dataclass(frozen=True, slots=True)
class StanzaLine:
    """One ``key`` line of a basic_io stanza.

    Carries either a bracketed *hash* or quoted *values*, never both.
    monotone prints an empty list as a bare key (no hash, no values).
    """

    key: str
    values: tuple[str, ...] = ()
    hash: str | None = None

    def __post_init__(self) -> None:
        if self.hash is not None and self.values:
            raise ValueError(
                f"stanza line '{self.key}' cannot carry both hash and values"
            )

    @property
    def value(self) -> str:
        """The first quoted value (empty string for hash lines)."""
        return self.values[0] if self.values else ""


@dataclass(frozen=True, slots=True)
class Stanza:
    """An ordered group of :class:`StanzaLine` objects."""

    lines: tuple[StanzaLine, ...]

    @property
    def key(self) -> str:
        """Key of the first line; identifies the stanza kind."""
        return self.lines[0].key if self.lines else ""

    def first(self, key: str) -> StanzaLine | None:
        for line in self.lines:
            if line.key == key:
                return line
        return None

    def __iter__(self) -> Iterator[StanzaLine]:
        return iter(self.lines)

    def __getitem__(self, index: int) -> StanzaLine:
        return self.lines[index]

    def __len__(self) -> int:
        return len(self.lines)


@dataclass(frozen=True, slots=True)
class TreeEntry:
    """A manifest entry (``blob`` or ``tree``) plus its last-change metadata."""

    file: str
    fullpath: str
    efullpath: str
    type: str  # "blob" or "tree"
    size: int = 0
    hash: str | None = None
    rev: str | None = None
    author: str | None = None
    date: str | None = None
    log: str | None = None


@dataclass(frozen=True, slots=True)
class CommitRecord:
    """Certificates of one revision, optionally with its diff."""

    commit: str
    author: str
    date: str
    title: str
    changes: str = ""


@dataclass(frozen=True, slots=True)
class LogEntry:
    """One revision of a change log."""

    commit: str
    author: str
    date: str
    title: str
    full_message: str = ""


@dataclass(frozen=True, slots=True)
class CertificateSet:
    """Certificate name → ordered values, for exactly one revision."""

    revision: str
    certs: dict[str, list[str]] = field(default_factory=dict)

    def get(self, name: str) -> list[str]:
        return self.certs.get(name, [])

    def __contains__(self, name: object) -> bool:
        return name in self.certs
