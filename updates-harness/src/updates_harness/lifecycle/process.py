from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

logger = logging.getLogger(__name__)


class CommandUnavailableError(RuntimeError):
    """The executable could not be launched at all."""


class CommandTimeoutError(RuntimeError):
    pass


@dataclass(frozen=True)
class CommandResult:
    args: list[str]
    stdout: str
    stderr: str
    returncode: int

    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def combined(self) -> str:
        return ((self.stdout or "") + "\n" + (self.stderr or "")).strip()

    def describe(self, limit: int = 500) -> str:
        return (
            f"rc={self.returncode}: {' '.join(self.args)}\n"
            f"stdout: {self.stdout[-limit:]}\n"
            f"stderr: {self.stderr[-limit:]}"
        )


async def run_command(
    args: Sequence[str],
    *,
    timeout_s: float = 60.0,
    cwd: Optional[Path] = None,
    capture: bool = True,
) -> CommandResult:
    """Run a command without blocking the event loop.

    With `capture=False` output goes to the parent's stdout/stderr (long native
    builds), and the result carries empty strings.
    """

    cmd = [str(a) for a in args]
    logger.debug("exec: %s", " ".join(cmd))
    pipe = asyncio.subprocess.PIPE if capture else None
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd is not None else None,
            stdout=pipe,
            stderr=pipe,
        )
    except (FileNotFoundError, PermissionError) as e:
        raise CommandUnavailableError(f"cannot execute {cmd[0]}: {e}") from e

    try:
        stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError as e:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        with contextlib.suppress(ProcessLookupError):
            await proc.wait()
        raise CommandTimeoutError(f"timed out after {timeout_s:.1f}s: {' '.join(cmd)}") from e

    stdout = (stdout_b or b"").decode("utf-8", errors="replace")
    stderr = (stderr_b or b"").decode("utf-8", errors="replace")
    return CommandResult(
        args=cmd, stdout=stdout, stderr=stderr, returncode=int(proc.returncode or 0)
    )
