"""Android emulator/device control via adb."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Optional, Sequence

from updates_harness.errors import InstallError, LifecycleError
from updates_harness.lifecycle.base import CommandDriver, CommandRunner
from updates_harness.lifecycle.process import (
    CommandResult,
    CommandTimeoutError,
    CommandUnavailableError,
    run_command,
)

logger = logging.getLogger(__name__)

_UNREACHABLE_RE = re.compile(
    r"device (?:'[^']*' )?not found|no devices/emulators found|device offline|device unauthorized",
    re.IGNORECASE,
)
_NOT_INSTALLED_RE = re.compile(
    r"Unknown package|DELETE_FAILED_INTERNAL_ERROR|not installed for", re.IGNORECASE
)


def _unreachable(res: CommandResult) -> bool:
    return bool(_UNREACHABLE_RE.search(res.combined))


class AndroidEmulatorDriver(CommandDriver):
    def __init__(
        self,
        package: str,
        *,
        activity: str = ".MainActivity",
        serial: Optional[str] = None,
        adb_path: str = "adb",
        runner: CommandRunner = run_command,
        timeout_s: float = 60.0,
        install_timeout_s: float = 300.0,
    ) -> None:
        super().__init__(runner=runner, timeout_s=timeout_s)
        self.package = package
        self.activity = activity
        self.serial = serial
        self._adb_path = adb_path
        self._install_timeout_s = install_timeout_s

    @property
    def component(self) -> str:
        activity = self.activity
        if activity.startswith("."):
            activity = self.package + activity
        return f"{self.package}/{activity}"

    def _base_cmd(self) -> list[str]:
        cmd = [self._adb_path]
        if self.serial:
            cmd += ["-s", self.serial]
        return cmd

    async def _adb(
        self, *args: str, timeout_s: float | None = None, error: type[Exception] = LifecycleError
    ) -> CommandResult:
        cmd: Sequence[str] = self._base_cmd() + list(args)
        try:
            res = await self._run(cmd, timeout_s=timeout_s)
        except (CommandUnavailableError, CommandTimeoutError) as e:
            raise error(str(e)) from e
        if _unreachable(res):
            logger.error("adb target unreachable: %s", res.combined[:200])
            raise error(f"adb target unreachable ({res.describe()})")
        return res

    async def install(self, binary_path: Path) -> None:
        apk = Path(binary_path)
        if not apk.is_file():
            raise InstallError(f"client binary not found: {apk}")
        res = await self._adb(
            "install", "-r", str(apk), timeout_s=self._install_timeout_s, error=InstallError
        )
        if not res.ok() or "Failure" in res.combined:
            raise InstallError(f"adb install failed ({res.describe()})")
        logger.info("installed %s (%s)", self.package, apk.name)

    async def uninstall(self) -> None:
        res = await self._adb("uninstall", self.package)
        if res.ok() and "Success" in res.combined:
            logger.info("uninstalled %s", self.package)
            return
        if _NOT_INSTALLED_RE.search(res.combined):
            logger.debug("%s not installed; nothing to uninstall", self.package)
            return
        raise LifecycleError(f"adb uninstall failed ({res.describe()})")

    async def start(self) -> None:
        res = await self._adb("shell", "am", "start", "-W", "-n", self.component)
        if not res.ok() or re.search(r"^Error", res.combined, re.MULTILINE):
            raise LifecycleError(f"failed to start {self.component} ({res.describe()})")
        logger.info("started %s", self.component)

    async def stop(self) -> None:
        # force-stop succeeds whether or not the app is running
        res = await self._adb("shell", "am", "force-stop", self.package)
        if not res.ok():
            raise LifecycleError(f"failed to stop {self.package} ({res.describe()})")
        logger.info("stopped %s", self.package)
