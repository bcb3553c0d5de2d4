from __future__ import annotations

import abc
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from updates_harness.lifecycle.process import CommandResult, run_command

CommandRunner = Callable[..., Awaitable[CommandResult]]


class ClientDriver(abc.ABC):
    """Install/start/stop control over the client app under test.

    Every method is idempotent with respect to its precondition: uninstalling
    an app that is not installed and stopping an app that is not running are
    no-ops.
    """

    @abc.abstractmethod
    async def install(self, binary_path: Path) -> None: ...

    @abc.abstractmethod
    async def uninstall(self) -> None: ...

    @abc.abstractmethod
    async def start(self) -> None: ...

    @abc.abstractmethod
    async def stop(self) -> None: ...


class CommandDriver(ClientDriver):
    """Shared plumbing for drivers that shell out to a device CLI."""

    def __init__(self, *, runner: CommandRunner = run_command, timeout_s: float = 60.0) -> None:
        self._runner = runner
        self._timeout_s = timeout_s

    async def _run(self, args: Sequence[str], *, timeout_s: float | None = None) -> CommandResult:
        return await self._runner(
            list(args), timeout_s=self._timeout_s if timeout_s is None else float(timeout_s)
        )
