"""Shared fixtures: fake project, user directory, command channels."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Sequence

import pytest

from mtn_scm.infrastructure.config import Settings
from mtn_scm.infrastructure.monotone_adapter import MonotoneRepository
from mtn_scm.infrastructure.stdio_transport import MonotoneStdio

FAKE_MTN = Path(__file__).with_name("fake_mtn.py")

KEY = "de84b575d5e47254393eba49dce9dc4db98ed42d"


class FakeProject:
    def __init__(self, shortname: str = "demo", config: dict[str, str] | None = None):
        self.shortname = shortname
        self.config = config or {}

    def get_config_value(self, key: str, default: str = "") -> str:
        return self.config.get(key, default)


class FakeUsers:
    def __init__(self, by_email: dict[str, Any] | None = None, by_login: dict[str, Any] | None = None):
        self.by_email = by_email or {}
        self.by_login = by_login or {}

    def find_by_email(self, email: str) -> Any | None:
        return self.by_email.get(email)

    def find_by_login(self, login: str) -> Any | None:
        return self.by_login.get(login)


class FakeStdio:
    """In-memory AutomateChannel answering from a command → output table."""

    def __init__(self, responses: dict[tuple[str, ...], str | Exception]):
        self.responses = responses
        self.calls: list[tuple[tuple[str, ...], Any]] = []
        self.stopped = False

    def exec(self, args: Sequence[str], options: Any = None) -> str:
        key = tuple(args)
        self.calls.append((key, options))
        if key not in self.responses:
            raise AssertionError(f"unexpected command {key}")
        response = self.responses[key]
        if isinstance(response, Exception):
            raise response
        return response

    def exec_raw(self, args: Sequence[str], options: Any = None) -> bytes:
        return self.exec(args, options).encode("utf-8")

    def last_out_of_band_output(self) -> dict[str, list[str]]:
        return {"w": [], "p": [], "t": [], "e": []}

    def stop(self) -> None:
        self.stopped = True

    def count(self, *args: str) -> int:
        return sum(1 for key, _ in self.calls if key == args)

    def commands(self) -> list[str]:
        return [key[0] for key, _ in self.calls]


def rev(char: str) -> str:
    """A 40-character revision id made of one repeated hex digit."""
    return char * 40


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def certs_output(**certs: Sequence[str]) -> str:
    """Render ``automate certs`` output for the given cert values."""
    stanzas = []
    for name, values in certs.items():
        for value in values:
            stanzas.append(
                f"      key [{KEY}]\n"
                f'signature "ok"\n'
                f"     name {_quote(name)}\n"
                f"    value {_quote(value)}\n"
                f'    trust "trusted"\n'
            )
    return "\n".join(stanzas)


@pytest.fixture
def project() -> FakeProject:
    return FakeProject()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        mtn_db_access="local",
        mtn_repositories=str(tmp_path / "{shortname}.mtn"),
        mtn_remote_url="ssh://mtn.example.org/{shortname}",
    )


@pytest.fixture
def make_repo(
    project: FakeProject, settings: Settings
) -> Callable[..., tuple[MonotoneRepository, FakeStdio]]:
    def _make(
        responses: dict[tuple[str, ...], str | Exception],
    ) -> tuple[MonotoneRepository, FakeStdio]:
        fake = FakeStdio(responses)
        repo = MonotoneRepository(
            project, settings, stdio_factory=lambda _project, _settings: fake
        )
        return repo, fake

    return _make


@pytest.fixture
def fake_mtn(tmp_path: Path, project: FakeProject) -> Callable[..., Settings]:
    """Write a fake-mtn script and return settings that spawn it."""

    def _settings(mode: str = "local", **script: Any) -> Settings:
        script_path = tmp_path / "script.json"
        script_path.write_text(json.dumps(script))
        db = tmp_path / f"{project.shortname}.mtn"
        db.write_bytes(b"")
        return Settings(
            mtn_path=sys.executable,
            mtn_opts=[str(FAKE_MTN), str(script_path)],
            mtn_db_access=mode,
            mtn_repositories=str(tmp_path / "{shortname}.mtn"),
            mtn_remote_url="ssh://mtn.example.org/{shortname}",
        )

    return _settings


@pytest.fixture
def open_stdio(project: FakeProject):
    """Start MonotoneStdio instances and make sure they are stopped."""
    started: list[MonotoneStdio] = []

    def _open(settings: Settings) -> MonotoneStdio:
        stdio = MonotoneStdio(project, settings)
        started.append(stdio)
        return stdio

    yield _open
    for stdio in started:
        stdio.stop()
