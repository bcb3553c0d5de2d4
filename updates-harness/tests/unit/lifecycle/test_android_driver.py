from __future__ import annotations

from pathlib import Path

import pytest
from fakes import FakeRunner, result

from updates_harness.errors import InstallError, LifecycleError
from updates_harness.lifecycle.android import AndroidEmulatorDriver
from updates_harness.lifecycle.process import CommandUnavailableError


def _driver(runner: FakeRunner, **kwargs) -> AndroidEmulatorDriver:
    return AndroidEmulatorDriver("dev.expo.updatese2e", runner=runner, **kwargs)


def test_component_expands_relative_activity() -> None:
    d = _driver(FakeRunner())
    assert d.component == "dev.expo.updatese2e/dev.expo.updatese2e.MainActivity"
    d = _driver(FakeRunner(), activity="com.other/.Main")
    assert d.component == "dev.expo.updatese2e/com.other/.Main"


async def test_install_runs_adb_install_with_serial(tmp_path: Path) -> None:
    apk = tmp_path / "app-release.apk"
    apk.write_bytes(b"apk")
    runner = FakeRunner()
    await _driver(runner, serial="emulator-5554").install(apk)
    assert runner.calls == [["adb", "-s", "emulator-5554", "install", "-r", str(apk)]]


async def test_install_missing_binary_fails_before_adb(tmp_path: Path) -> None:
    runner = FakeRunner()
    with pytest.raises(InstallError, match="not found"):
        await _driver(runner).install(tmp_path / "missing.apk")
    assert runner.calls == []


async def test_install_failure_output_is_install_error(tmp_path: Path) -> None:
    apk = tmp_path / "app.apk"
    apk.write_bytes(b"apk")
    runner = FakeRunner(
        lambda args: result(args, stdout="Failure [INSTALL_FAILED_INSUFFICIENT_STORAGE]")
    )
    with pytest.raises(InstallError, match="INSUFFICIENT_STORAGE"):
        await _driver(runner).install(apk)


async def test_unreachable_device_is_lifecycle_error() -> None:
    runner = FakeRunner(lambda args: result(args, stderr="error: no devices/emulators found", rc=1))
    with pytest.raises(LifecycleError, match="unreachable"):
        await _driver(runner).start()


async def test_missing_adb_executable() -> None:
    runner = FakeRunner(lambda args: CommandUnavailableError("cannot execute adb"))
    with pytest.raises(LifecycleError, match="cannot execute adb"):
        await _driver(runner).stop()


async def test_uninstall_when_not_installed_is_noop() -> None:
    runner = FakeRunner(
        lambda args: result(args, stdout="Failure [DELETE_FAILED_INTERNAL_ERROR]", rc=1)
    )
    await _driver(runner).uninstall()
    assert runner.calls == [["adb", "uninstall", "dev.expo.updatese2e"]]


async def test_uninstall_blocked_by_device_policy_raises() -> None:
    runner = FakeRunner(
        lambda args: result(args, stdout="Failure [DELETE_FAILED_DEVICE_POLICY_MANAGER]", rc=1)
    )
    with pytest.raises(LifecycleError, match="DEVICE_POLICY_MANAGER"):
        await _driver(runner).uninstall()


async def test_uninstall_unexpected_error_raises() -> None:
    runner = FakeRunner(lambda args: result(args, stderr="adb: killed", rc=137))
    with pytest.raises(LifecycleError):
        await _driver(runner).uninstall()


async def test_start_and_stop_commands() -> None:
    runner = FakeRunner(lambda args: result(args, stdout="Status: ok"))
    d = _driver(runner)
    await d.start()
    await d.stop()
    assert runner.calls == [
        ["adb", "shell", "am", "start", "-W", "-n", d.component],
        ["adb", "shell", "am", "force-stop", "dev.expo.updatese2e"],
    ]


async def test_start_error_output_raises() -> None:
    runner = FakeRunner(
        lambda args: result(args, stdout="Starting: Intent\nError: Activity class does not exist.")
    )
    with pytest.raises(LifecycleError, match="failed to start"):
        await _driver(runner).start()
