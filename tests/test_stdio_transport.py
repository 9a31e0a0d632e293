"""Tests for the automate stdio transport, against a scripted fake mtn."""

from pathlib import Path

import pytest

from mtn_scm.domain.exceptions import (
    CommandFailedError,
    ProtocolDesyncError,
    ProtocolError,
    StartupError,
    StreamClosedError,
    VersionMismatchError,
)
from mtn_scm.infrastructure.config import Settings
from mtn_scm.infrastructure.monotone_adapter import MonotoneRepository
from mtn_scm.infrastructure.stdio_transport import MonotoneStdio, encode_command


class TestEncodeCommand:
    def test_arguments_only(self):
        assert encode_command(["get_file", "abc"]) == b"l8:get_file3:abce\n"

    def test_repeated_option(self):
        frame = encode_command(["content_diff"], {"r": ["a", "b"]})
        assert frame == b"o1:r1:a1:r1:be l12:content_diffe\n"

    def test_single_option_value(self):
        assert encode_command(["x"], {"k": "v"}) == b"o1:k1:ve l1:xe\n"

    def test_lengths_are_byte_counts(self):
        assert encode_command(["größe"]) == "l7:größee\n".encode("utf-8")

    def test_empty_options_are_omitted(self):
        assert encode_command(["branches"], {}) == b"l8:branchese\n"


class TestHandshake:
    def test_supported_version(self, fake_mtn, open_stdio):
        stdio = open_stdio(fake_mtn())
        assert stdio.is_running

    def test_wrong_version(self, fake_mtn, open_stdio):
        with pytest.raises(VersionMismatchError, match="got '1'"):
            open_stdio(fake_mtn(handshake="format-version: 1\n\n"))

    def test_missing_version_line(self, fake_mtn, open_stdio):
        settings = fake_mtn(handshake="", exit=True, stderr="mtn: misuse\n")
        with pytest.raises(VersionMismatchError, match="mtn: misuse"):
            open_stdio(settings)

    def test_garbled_version_line(self, fake_mtn, open_stdio):
        with pytest.raises(VersionMismatchError):
            open_stdio(fake_mtn(handshake="hello\n\n"))

    def test_stderr_is_capped(self, fake_mtn, open_stdio):
        tail = "x" * 89 + "END-OF-STDERR"
        settings = fake_mtn(
            handshake="", exit=True, stderr="y" * 200_000 + tail
        ).model_copy(update={"stderr_limit": 102})
        with pytest.raises(VersionMismatchError) as info:
            open_stdio(settings)
        message = str(info.value)
        assert message.endswith("stderr is:\n" + tail)
        assert "y" not in message.split("stderr is:\n", 1)[1]


class TestStartup:
    def test_missing_local_database(self, project, tmp_path, open_stdio):
        settings = Settings(
            mtn_db_access="local",
            mtn_repositories=str(tmp_path / "nowhere" / "{shortname}.mtn"),
        )
        with pytest.raises(StartupError, match="does not exist"):
            open_stdio(settings)

    def test_binary_not_found(self, fake_mtn, tmp_path, open_stdio):
        settings = fake_mtn().model_copy(
            update={"mtn_path": str(tmp_path / "no-such-mtn")}
        )
        with pytest.raises(StartupError):
            open_stdio(settings)

    def test_local_command_line(self, fake_mtn, open_stdio, tmp_path):
        stdio = open_stdio(fake_mtn())
        assert stdio.command_line()[-4:] == [
            "--db",
            str(tmp_path / "demo.mtn"),
            "automate",
            "stdio",
        ]

    def test_remote_command_line(self, fake_mtn, open_stdio):
        stdio = open_stdio(fake_mtn(mode="remote"))
        assert stdio.command_line()[-3:] == [
            "automate",
            "remote_stdio",
            "ssh://mtn.example.org/demo",
        ]

    def test_exec_cmd_prefix(self, fake_mtn, open_stdio):
        settings = fake_mtn().model_copy(update={"exec_cmd_prefix": "env -u FOO"})
        stdio = open_stdio(settings)
        assert stdio.command_line()[:3] == ["env", "-u", "FOO"]


class TestExec:
    def test_main_output(self, fake_mtn, open_stdio):
        stdio = open_stdio(fake_mtn(responses=["0:m:10:testbranch0:l:1:0"]))
        assert stdio.exec(["branches"]) == "testbranch"

    def test_output_spread_over_chunks(self, fake_mtn, open_stdio):
        settings = fake_mtn(responses=["0:m:5:hello0:m:6: world0:l:1:0"])
        assert open_stdio(settings).exec(["x"]) == "hello world"

    def test_incremental_delivery(self, fake_mtn, open_stdio):
        settings = fake_mtn(trickle=True, responses=["0:m:5:hello0:l:1:0"])
        assert open_stdio(settings).exec(["x"]) == "hello"

    def test_command_numbers_increase(self, fake_mtn, open_stdio):
        settings = fake_mtn(responses=["0:m:1:a0:l:1:0", "1:m:1:b1:l:1:0"])
        stdio = open_stdio(settings)
        assert stdio.exec(["x"]) == "a"
        assert stdio.exec(["y"]) == "b"

    def test_exec_raw_returns_bytes(self, fake_mtn, open_stdio):
        settings = fake_mtn(responses=["0:m:3:abc0:l:1:0"])
        assert open_stdio(settings).exec_raw(["get_file", "h"]) == b"abc"

    def test_frames_reach_the_backend(self, fake_mtn, open_stdio, tmp_path):
        log = tmp_path / "frames.log"
        settings = fake_mtn(
            log=str(log),
            responses=["0:l:1:0", "1:l:1:0"],
        )
        stdio = open_stdio(settings)
        stdio.exec(["branches"])
        stdio.exec(["content_diff"], {"r": ["a", "b"]})
        stdio.stop()
        assert log.read_bytes() == (
            b"l8:branchese\n" b"o1:r1:a1:r1:be l12:content_diffe\n"
        )


class TestOutOfBand:
    def test_channels_are_collected(self, fake_mtn, open_stdio):
        settings = fake_mtn(
            responses=["0:w:4:warn0:p:3:50%0:t:2:#10:m:2:ok0:l:1:0"]
        )
        stdio = open_stdio(settings)
        assert stdio.exec(["x"]) == "ok"
        assert stdio.last_out_of_band_output() == {
            "w": ["warn"],
            "p": ["50%"],
            "t": ["#1"],
            "e": [],
        }

    def test_reset_per_command(self, fake_mtn, open_stdio):
        settings = fake_mtn(responses=["0:w:4:warn0:l:1:0", "1:l:1:0"])
        stdio = open_stdio(settings)
        stdio.exec(["x"])
        stdio.exec(["y"])
        assert stdio.last_out_of_band_output()["w"] == []


class TestErrors:
    def test_non_zero_error_code(self, fake_mtn, open_stdio):
        settings = fake_mtn(responses=["0:e:9:bad thing0:l:1:1"])
        stdio = open_stdio(settings)
        with pytest.raises(CommandFailedError) as info:
            stdio.exec(["select", "nonsense"])
        assert info.value.code == 1
        assert info.value.errors == "bad thing"
        assert "l6:select8:nonsensee" in info.value.command

    def test_stream_stays_usable_after_command_failure(self, fake_mtn, open_stdio):
        settings = fake_mtn(responses=["0:l:1:2", "1:m:2:ok1:l:1:0"])
        stdio = open_stdio(settings)
        with pytest.raises(CommandFailedError):
            stdio.exec(["x"])
        assert stdio.exec(["y"]) == "ok"

    def test_desync(self, fake_mtn, open_stdio):
        stdio = open_stdio(fake_mtn(responses=["7:m:3:foo7:l:1:0"]))
        with pytest.raises(ProtocolDesyncError) as info:
            stdio.exec(["x"])
        assert (info.value.expected, info.value.received) == (0, 7)
        assert not stdio.is_running

    def test_exec_after_desync(self, fake_mtn, open_stdio):
        stdio = open_stdio(fake_mtn(responses=["3:l:1:0"]))
        with pytest.raises(ProtocolDesyncError):
            stdio.exec(["x"])
        with pytest.raises(ProtocolError, match="not running"):
            stdio.exec(["y"])

    def test_unknown_channel(self, fake_mtn, open_stdio):
        stdio = open_stdio(fake_mtn(responses=["0:z:1:x0:l:1:0"]))
        with pytest.raises(ProtocolError, match="unknown output channel"):
            stdio.exec(["x"])
        assert not stdio.is_running

    def test_exec_after_malformed_stream(self, fake_mtn, open_stdio):
        stdio = open_stdio(fake_mtn(responses=["0:z:1:x0:l:1:0", "1:l:1:0"]))
        with pytest.raises(ProtocolError, match="unknown output channel"):
            stdio.exec(["x"])
        with pytest.raises(ProtocolError, match="not running"):
            stdio.exec(["y"])

    def test_malformed_header(self, fake_mtn, open_stdio):
        stdio = open_stdio(fake_mtn(responses=["zero:m:1:x"]))
        with pytest.raises(ProtocolError, match="malformed"):
            stdio.exec(["x"])
        assert not stdio.is_running

    def test_backend_exits_mid_command(self, fake_mtn, open_stdio):
        stdio = open_stdio(fake_mtn(hangup=True, responses=["0:m:10:short"]))
        with pytest.raises(StreamClosedError):
            stdio.exec(["x"])
        assert not stdio.is_running


class TestLifecycle:
    def test_stop_is_idempotent(self, fake_mtn, open_stdio):
        stdio = open_stdio(fake_mtn())
        stdio.stop()
        stdio.stop()
        assert not stdio.is_running

    def test_restart_resets_command_counter(self, fake_mtn, open_stdio):
        settings = fake_mtn(responses=["0:m:1:a0:l:1:0"])
        stdio = open_stdio(settings)
        assert stdio.exec(["x"]) == "a"
        stdio.start()
        assert stdio.exec(["x"]) == "a"

    def test_context_manager(self, fake_mtn, project):
        with MonotoneStdio(project, fake_mtn()) as stdio:
            assert stdio.is_running
        assert not stdio.is_running


class TestRepositoryOverStdio:
    def test_branches_end_to_end(self, fake_mtn, project):
        settings = fake_mtn(responses=["0:m:10:testbranch0:l:1:0"])
        with MonotoneRepository(project, settings) as repo:
            assert repo.get_branches() == {"h:testbranch": "testbranch"}

    def test_unavailable_backend(self, project, tmp_path: Path):
        settings = Settings(
            mtn_db_access="local",
            mtn_repositories=str(tmp_path / "{shortname}.mtn"),
        )
        assert MonotoneRepository(project, settings).is_available() is False
