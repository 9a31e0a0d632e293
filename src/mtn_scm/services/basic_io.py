"""basic_io — monotone's stanza-based plain-text format.

A document is a sequence of stanzas separated by blank lines.  Each line
of a stanza is a bareword key (right-aligned with leading spaces by
monotone) followed either by one 40-character hash in square brackets or
by one or more space-separated quoted strings (an empty list leaves the
key bare)::

    format_version "1"

       file "src/main.c"
    content [0a4d55a8d778e5022fab701977c5d840bbc486d0]

The scanner below is a single pass over the text with an explicit cursor.
"""

from __future__ import annotations

from typing import Iterable

from mtn_scm.domain.entities import Stanza, StanzaLine
from mtn_scm.domain.exceptions import BasicIOParseError

HASH_WIDTH = 40


class _Scanner:
    """Cursor over basic_io text."""

    def __init__(self, text: str) -> None:
        self._text = text
        self._pos = 0

    def _peek(self) -> str:
        if self._pos >= len(self._text):
            raise BasicIOParseError("unexpected end of input", self._pos)
        return self._text[self._pos]

    def _expect(self, char: str) -> None:
        if self._peek() != char:
            raise BasicIOParseError(
                f"expected {char!r}, found {self._text[self._pos]!r}", self._pos
            )
        self._pos += 1

    def stanzas(self) -> list[Stanza]:
        result: list[Stanza] = []
        end = len(self._text)
        while self._pos < end:
            lines: list[StanzaLine] = []
            while self._pos < end and self._text[self._pos] != "\n":
                lines.append(self._line())
            # blank separator line
            self._pos += 1
            if lines:
                result.append(Stanza(tuple(lines)))
        return result

    def _line(self) -> StanzaLine:
        key = self._key()
        if self._peek() == "\n":
            line = StanzaLine(key=key)
        elif self._peek() == "[":
            line = StanzaLine(key=key, hash=self._hash())
        else:
            line = StanzaLine(key=key, values=self._values())
        self._expect("\n")
        return line

    def _key(self) -> str:
        chars: list[str] = []
        while True:
            ch = self._peek()
            if ch in ('"', "[", "\n"):
                break
            self._pos += 1
            if ch != " ":
                chars.append(ch)
        if not chars:
            raise BasicIOParseError("missing key", self._pos)
        return "".join(chars)

    def _hash(self) -> str:
        self._expect("[")
        # root revisions carry an empty hash: ``old_revision []``
        if self._peek() == "]":
            self._pos += 1
            return ""
        start = self._pos
        value = self._text[start : start + HASH_WIDTH]
        self._pos += HASH_WIDTH
        if len(value) != HASH_WIDTH or "]" in value:
            raise BasicIOParseError(
                f"hash must be {HASH_WIDTH} characters wide", start
            )
        self._expect("]")
        return value

    def _values(self) -> tuple[str, ...]:
        values = [self._quoted()]
        while self._pos < len(self._text) and self._text[self._pos] == " ":
            self._pos += 1
            values.append(self._quoted())
        return tuple(values)

    def _quoted(self) -> str:
        start = self._pos
        self._expect('"')
        chars: list[str] = []
        text = self._text
        while True:
            if self._pos >= len(text):
                raise BasicIOParseError("unterminated string", start)
            ch = text[self._pos]
            self._pos += 1
            if ch == '"':
                return "".join(chars)
            if ch == "\\":
                if self._pos >= len(text):
                    raise BasicIOParseError("unterminated string", start)
                ch = text[self._pos]
                self._pos += 1
            chars.append(ch)


def parse(text: str) -> list[Stanza]:
    """Decode basic_io *text* into its stanzas.

    Raises :class:`BasicIOParseError` on malformed input; there is no
    partial result.
    """
    if not text:
        return []
    if not text.endswith("\n"):
        text += "\n"
    return _Scanner(text).stanzas()


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def dump(stanzas: Iterable[Stanza]) -> str:
    """Encode stanzas the way monotone prints them."""
    blocks: list[str] = []
    for stanza in stanzas:
        width = max((len(line.key) for line in stanza), default=0)
        rows = []
        for line in stanza:
            if line.hash is not None:
                rendered = f"[{line.hash}]"
            else:
                rendered = " ".join(_quote(v) for v in line.values)
            rows.append(f"{line.key.rjust(width)} {rendered}".rstrip(" ") + "\n")
        blocks.append("".join(rows))
    return "\n".join(blocks)
