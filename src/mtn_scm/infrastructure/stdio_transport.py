"""``mtn automate stdio`` transport — implements the AutomateChannel port.

Requests are framed as netstring-like lists::

    [o<klen>:<key><vlen>:<val>...e ]l<alen>:<arg>...e\\n

and every response is a run of chunks::

    <cmdnum>:<channel>:<size>:<payload>

terminated by a chunk on the ``l`` channel whose payload is the command's
decimal error code.
"""

from __future__ import annotations

import logging
import os
import re
import select
import shlex
import subprocess
from typing import Any, Callable, Sequence

from mtn_scm.domain.entities import OUT_OF_BAND_CHANNELS, Channel
from mtn_scm.domain.exceptions import (
    CommandFailedError,
    ProtocolDesyncError,
    ProtocolError,
    ScmError,
    StartupError,
    StreamClosedError,
    VersionMismatchError,
)
from mtn_scm.domain.ports.automate_channel import OptionMap
from mtn_scm.domain.ports.project import Project
from mtn_scm.infrastructure.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Most recent stdio version; monotone prior to 0.47 does not announce one
# and is therefore unsupported.
SUPPORTED_STDIO_VERSION = 2

_VERSION_RE = re.compile(rb"^format-version: (\d+)$")
_READ_SIZE = 64 * 1024
_MAX_HEADER_FIELD = 32
_OOB_KEYS: frozenset[str] = frozenset(c.value for c in OUT_OF_BAND_CHANNELS)


def _lstring(value: Any) -> bytes:
    data = str(value).encode("utf-8")
    return b"%d:%s" % (len(data), data)


def encode_command(args: Sequence[str], options: OptionMap | None = None) -> bytes:
    """Frame one command for the stdio interface.

    Option values may be a single string or a sequence; every value of a
    repeated option is emitted as its own key/value pair.
    """
    parts: list[bytes] = []
    if options:
        parts.append(b"o")
        for key, vals in options.items():
            if isinstance(vals, str):
                vals = [vals]
            for val in vals:
                parts.append(_lstring(key))
                parts.append(_lstring(val))
        parts.append(b"e ")

    parts.append(b"l")
    parts.extend(_lstring(arg) for arg in args)
    parts.append(b"e\n")
    return b"".join(parts)


def _empty_oob() -> dict[str, list[str]]:
    return {c.value: [] for c in OUT_OF_BAND_CHANNELS}


class MonotoneStdio:
    """Owns one ``mtn automate (remote_)stdio`` process.

    Parameters
    ----------
    project:
        Supplies the short name used to locate the database or remote URL.
    settings:
        Backend binary, access mode and polling configuration.
    popen:
        Process factory, :class:`subprocess.Popen` unless overridden.

    The process is started by the constructor and stopped by :meth:`stop`,
    by leaving a ``with`` block or, as a last resort, on garbage collection.
    """

    def __init__(
        self,
        project: Project,
        settings: Settings | None = None,
        *,
        popen: Callable[..., subprocess.Popen[bytes]] = subprocess.Popen,
    ) -> None:
        self._project = project
        self._settings = settings or get_settings()
        self._popen = popen
        self._proc: subprocess.Popen[bytes] | None = None
        self._buffer = bytearray()
        self._stderr = bytearray()
        self._stderr_open = False
        self._oob = _empty_oob()
        self._cmdnum = -1
        self._last_cmd = b""
        self.start()

    def __enter__(self) -> MonotoneStdio:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def __del__(self) -> None:
        if getattr(self, "_proc", None) is not None:
            self.stop()

    # ── Lifecycle ───────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._proc is not None

    def command_line(self) -> list[str]:
        """Build the argv used to spawn the backend."""
        settings = self._settings
        shortname = self._project.shortname
        cmd = [*shlex.split(settings.exec_cmd_prefix), settings.mtn_path]
        cmd.extend(settings.mtn_opts)

        # TODO: anonymous (key-less) remote access once upstream bug #30237
        # is fixed in the monotone releases we support.
        if settings.mtn_db_access == "remote":
            cmd += ["automate", "remote_stdio", settings.remote_url_for(shortname)]
        else:
            repo = settings.repository_for(shortname)
            if not os.path.exists(repo):
                raise StartupError(f"repository file '{repo}' does not exist")
            cmd += ["--db", repo, "automate", "stdio"]
        return cmd

    def start(self) -> None:
        """Start the process and reset the command counter."""
        if self.is_running:
            self.stop()

        cmd = self.command_line()
        env = dict(os.environ, LANG="en_US.UTF-8")
        logger.info("Starting stdio process: %s", shlex.join(cmd))
        try:
            self._proc = self._popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            raise StartupError(f"could not start stdio process: {exc}") from exc

        self._buffer.clear()
        self._stderr.clear()
        self._stderr_open = True
        try:
            self._check_version()
        except ScmError:
            self.stop()
            raise

        self._cmdnum = -1

    def stop(self) -> None:
        """Close all pipes and wait for the process; no-op when stopped."""
        proc = self._proc
        if proc is None:
            return
        self._proc = None

        for pipe in (proc.stdin, proc.stdout, proc.stderr):
            if pipe is None:
                continue
            try:
                pipe.close()
            except OSError:
                logger.debug("Error closing pipe of pid %d", proc.pid, exc_info=True)

        proc.wait()
        logger.info("Stopped stdio process (exit code %s)", proc.returncode)

    def _require_running(self) -> subprocess.Popen[bytes]:
        if self._proc is None:
            raise ProtocolError("stdio process is not running")
        return self._proc

    def _check_version(self) -> None:
        try:
            line = self._read_until(b"\n")
        except StreamClosedError as exc:
            raise VersionMismatchError(
                "Could not determine stdio version, stderr is:\n"
                + self._stderr_text()
            ) from exc

        match = _VERSION_RE.match(line)
        if not match or int(match[1]) != SUPPORTED_STDIO_VERSION:
            got = match[1].decode("ascii") if match else ""
            raise VersionMismatchError(
                f"stdio format version mismatch, expected "
                f"'{SUPPORTED_STDIO_VERSION}', got '{got}'"
            )

        # blank separator line
        self._read_until(b"\n")

    # ── Public API ──────────────────────────────────────────────────────

    def exec(self, args: Sequence[str], options: OptionMap | None = None) -> str:
        """Execute a command and return its main output as text.

        Options are key/value pairs; repeat an option by passing a list,
        e.g. ``{"r": [rev1, rev2]}``.
        """
        return self.exec_raw(args, options).decode("utf-8", "replace")

    def exec_raw(
        self, args: Sequence[str], options: OptionMap | None = None
    ) -> bytes:
        """Execute a command and return its main output as bytes.

        A failing command leaves the stream usable; any other protocol
        fault stops the process, since the stream position is lost.
        """
        try:
            self._write(args, options)
            return self._read_output()
        except CommandFailedError:
            raise
        except ProtocolError:
            self.stop()
            raise

    def last_out_of_band_output(self) -> dict[str, list[str]]:
        """Out-of-band output of the most recent command.

        Keys are ``e`` (error), ``w`` (warning), ``p`` (progress) and
        ``t`` (ticker, unparsed).
        """
        return {channel: list(chunks) for channel, chunks in self._oob.items()}

    # ── Writing ─────────────────────────────────────────────────────────

    def _write(self, args: Sequence[str], options: OptionMap | None) -> None:
        proc = self._require_running()
        assert proc.stdin is not None

        frame = encode_command(args, options)
        try:
            proc.stdin.write(frame)
            proc.stdin.flush()
        except OSError as exc:
            raise ProtocolError(f"could not write {frame!r} to process") from exc

        self._last_cmd = frame
        self._cmdnum += 1
        logger.debug("mtn[%d] %s", self._cmdnum, " ".join(args))

    # ── Reading ─────────────────────────────────────────────────────────

    def _read_output(self) -> bytes:
        self._oob = _empty_oob()
        output = bytearray()

        while True:
            channel, payload = self._read_chunk()
            if channel == Channel.MAIN:
                output += payload
            elif channel in _OOB_KEYS:
                self._oob[channel].append(payload.decode("utf-8", "replace"))
            elif channel == Channel.LAST:
                if not payload.isdigit():
                    raise ProtocolError(f"malformed error code {payload!r}")
                errcode = int(payload)
                break
            else:
                raise ProtocolError(f"unknown output channel '{channel}'")

        for warning in self._oob[Channel.WARNING.value]:
            logger.debug("mtn[%d] warning: %s", self._cmdnum, warning.rstrip())

        if errcode != 0:
            raise CommandFailedError(
                errcode,
                self._last_cmd.decode("utf-8", "replace"),
                " ".join(self._oob[Channel.ERROR.value]),
            )
        return bytes(output)

    def _read_chunk(self) -> tuple[str, bytes]:
        cmdnum = self._read_number()
        if cmdnum != self._cmdnum:
            expected = self._cmdnum
            self.stop()
            raise ProtocolDesyncError(expected, cmdnum)

        channel = self._read_field().decode("ascii", "replace")
        size = self._read_number()
        return channel, self._read_exact(size)

    def _read_number(self) -> int:
        field = self._read_field()
        if not field.isdigit():
            raise ProtocolError(f"malformed chunk header field {field!r}")
        return int(field)

    def _read_field(self) -> bytes:
        while True:
            idx = self._buffer.find(b":", 0, _MAX_HEADER_FIELD)
            if idx >= 0:
                field = bytes(self._buffer[:idx])
                del self._buffer[: idx + 1]
                return field
            if len(self._buffer) >= _MAX_HEADER_FIELD:
                raise ProtocolError(
                    f"malformed chunk header {bytes(self._buffer[:_MAX_HEADER_FIELD])!r}"
                )
            self._fill()

    def _read_until(self, delimiter: bytes) -> bytes:
        while True:
            idx = self._buffer.find(delimiter)
            if idx >= 0:
                data = bytes(self._buffer[:idx])
                del self._buffer[: idx + len(delimiter)]
                return data
            self._fill()

    def _read_exact(self, size: int) -> bytes:
        while len(self._buffer) < size:
            self._fill()
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def _fill(self) -> None:
        """Wait for stdout to become readable and buffer what arrived.

        Each wait is bounded by ``poll_interval``; the loop re-arms until
        data or EOF shows up.  Stderr is drained along the way so the
        process never blocks writing to it.
        """
        proc = self._require_running()
        assert proc.stdout is not None and proc.stderr is not None
        stdout_fd = proc.stdout.fileno()
        stderr_fd = proc.stderr.fileno()

        while True:
            watched = [stdout_fd, stderr_fd] if self._stderr_open else [stdout_fd]
            try:
                ready, _, _ = select.select(
                    watched, [], [], self._settings.poll_interval
                )
            except (OSError, ValueError) as exc:
                raise ProtocolError("could not select() on read pipe") from exc

            if stderr_fd in ready:
                self._drain_stderr(stderr_fd)

            if stdout_fd in ready:
                chunk = os.read(stdout_fd, _READ_SIZE)
                if not chunk:
                    raise StreamClosedError(
                        "no data on stdout, stderr is:\n" + self._stderr_text()
                    )
                self._buffer += chunk
                return

    def _drain_stderr(self, fd: int) -> None:
        chunk = os.read(fd, _READ_SIZE)
        if not chunk:
            self._stderr_open = False
            return
        self._stderr += chunk
        overflow = len(self._stderr) - self._settings.stderr_limit
        if overflow > 0:
            del self._stderr[:overflow]

    def _stderr_text(self) -> str:
        proc = self._proc
        if proc is not None and proc.stderr is not None:
            fd = proc.stderr.fileno()
            while self._stderr_open and select.select([fd], [], [], 0)[0]:
                self._drain_stderr(fd)
        text = self._stderr.decode("utf-8", "replace")
        return text or "<empty>"
