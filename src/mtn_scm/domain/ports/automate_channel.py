"""Port: command channel to a running ``mtn automate`` process."""

from __future__ import annotations

from typing import Mapping, Protocol, Sequence, runtime_checkable

OptionMap = Mapping[str, str | Sequence[str]]


@runtime_checkable
class AutomateChannel(Protocol):
    """Strict request/response channel; one command in flight at a time."""

    def exec(self, args: Sequence[str], options: OptionMap | None = None) -> str:
        """Run one command and return its main output as text."""
        ...

    def exec_raw(
        self, args: Sequence[str], options: OptionMap | None = None
    ) -> bytes:
        """Run one command and return its main output undecoded."""
        ...

    def last_out_of_band_output(self) -> dict[str, list[str]]:
        """Warning/progress/ticker/error output of the last command."""
        ...

    def stop(self) -> None:
        """Terminate the backend process; safe to call repeatedly."""
        ...
