"""iOS simulator control via `xcrun simctl`."""

from __future__ import annotations

import logging
import re
from pathlib import Path

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
    r"No devices are booted|Invalid device|Unable to lookup in current state: Shutdown",
    re.IGNORECASE,
)
_NOT_RUNNING_RE = re.compile(r"found nothing to terminate|not running", re.IGNORECASE)
_NOT_INSTALLED_RE = re.compile(
    r"is not installed|No such (?:app|application|bundle)|Unknown bundle", re.IGNORECASE
)


class IosSimulatorDriver(CommandDriver):
    def __init__(
        self,
        bundle_id: str,
        *,
        device: str = "booted",
        runner: CommandRunner = run_command,
        timeout_s: float = 60.0,
        install_timeout_s: float = 300.0,
    ) -> None:
        super().__init__(runner=runner, timeout_s=timeout_s)
        self.bundle_id = bundle_id
        self.device = device
        self._install_timeout_s = install_timeout_s

    async def _simctl(
        self, *args: str, timeout_s: float | None = None, error: type[Exception] = LifecycleError
    ) -> CommandResult:
        try:
            res = await self._run(["xcrun", "simctl", *args], timeout_s=timeout_s)
        except (CommandUnavailableError, CommandTimeoutError) as e:
            raise error(str(e)) from e
        if not res.ok() and _UNREACHABLE_RE.search(res.combined):
            raise error(f"simulator unreachable ({res.describe()})")
        return res

    async def install(self, binary_path: Path) -> None:
        app = Path(binary_path)
        if not app.exists():
            raise InstallError(f"client binary not found: {app}")
        res = await self._simctl(
            "install", self.device, str(app), timeout_s=self._install_timeout_s, error=InstallError
        )
        if not res.ok():
            raise InstallError(f"simctl install failed ({res.describe()})")
        logger.info("installed %s (%s)", self.bundle_id, app.name)

    async def uninstall(self) -> None:
        res = await self._simctl("uninstall", self.device, self.bundle_id)
        if res.ok():
            logger.info("uninstalled %s", self.bundle_id)
            return
        if _NOT_INSTALLED_RE.search(res.combined):
            logger.debug("%s not installed; nothing to uninstall", self.bundle_id)
            return
        raise LifecycleError(f"simctl uninstall failed ({res.describe()})")

    async def start(self) -> None:
        res = await self._simctl("launch", self.device, self.bundle_id)
        if not res.ok():
            raise LifecycleError(f"simctl launch failed ({res.describe()})")
        logger.info("launched %s", self.bundle_id)

    async def stop(self) -> None:
        res = await self._simctl("terminate", self.device, self.bundle_id)
        if res.ok() or _NOT_RUNNING_RE.search(res.combined):
            logger.info("terminated %s", self.bundle_id)
            return
        raise LifecycleError(f"simctl terminate failed ({res.describe()})")
