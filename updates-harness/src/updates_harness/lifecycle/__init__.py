"""Client lifecycle drivers.

Thin wrappers around device tooling (adb, simctl). They carry no protocol
logic; the orchestrator treats them as opaque install/start/stop controls.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from updates_harness.lifecycle.android import AndroidEmulatorDriver
from updates_harness.lifecycle.base import ClientDriver, CommandDriver
from updates_harness.lifecycle.ios import IosSimulatorDriver

if TYPE_CHECKING:
    from updates_harness.config import HarnessSettings


def driver_for_platform(settings: "HarnessSettings") -> ClientDriver:
    if settings.platform == "android":
        return AndroidEmulatorDriver(
            settings.android_package,
            activity=settings.android_activity,
            serial=settings.android_serial,
        )
    if settings.platform == "ios":
        return IosSimulatorDriver(settings.ios_bundle_id, device=settings.ios_device)
    raise ValueError(f"unsupported platform: {settings.platform!r}")


__all__ = [
    "AndroidEmulatorDriver",
    "ClientDriver",
    "CommandDriver",
    "IosSimulatorDriver",
    "driver_for_platform",
]
