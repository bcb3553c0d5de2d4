"""Native build glue: produce an installable client binary from a project tree.

These are black boxes to the rest of the harness; each returns the path of a
freshly copied artifact under the destination folder.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import Awaitable, Callable

from updates_harness.errors import BuildError
from updates_harness.lifecycle.process import (
    CommandResult,
    CommandTimeoutError,
    CommandUnavailableError,
    run_command,
)

logger = logging.getLogger(__name__)

Builder = Callable[[Path, Path], Awaitable[Path]]

BUILD_TIMEOUT_S = 60 * 60
IOS_SCHEME = "updatese2e"


async def _build_step(args: list[str], *, cwd: Path) -> CommandResult:
    logger.info("build: %s (cwd=%s)", " ".join(args), cwd)
    try:
        res = await run_command(args, cwd=cwd, timeout_s=BUILD_TIMEOUT_S, capture=False)
    except (CommandUnavailableError, CommandTimeoutError) as e:
        raise BuildError(str(e)) from e
    if not res.ok():
        raise BuildError(f"build command failed (rc={res.returncode}): {' '.join(args)}")
    return res


def _stamp() -> int:
    return int(time.time() * 1000)


async def build_android_async(project_root: Path, destination: Path) -> Path:
    android_dir = Path(project_root) / "android"
    await _build_step(["./gradlew", "assembleRelease", "--stacktrace"], cwd=android_dir)

    apk = android_dir / "app" / "build" / "outputs" / "apk" / "release" / "app-release.apk"
    if not apk.is_file():
        raise BuildError(f"release apk not found after build: {apk}")
    destination = Path(destination)
    destination.mkdir(parents=True, exist_ok=True)
    dest = destination / f"android-release-{_stamp()}.apk"
    await asyncio.to_thread(shutil.copyfile, apk, dest)
    return dest


async def build_ios_async(project_root: Path, destination: Path) -> Path:
    ios_dir = Path(project_root) / "ios"
    await _build_step(
        [
            "xcodebuild",
            "-workspace",
            f"{IOS_SCHEME}.xcworkspace",
            "-scheme",
            IOS_SCHEME,
            "-configuration",
            "Release",
            "-destination",
            "generic/platform=iOS Simulator",
            "-derivedDataPath",
            "./build",
            "build",
        ],
        cwd=ios_dir,
    )

    app = ios_dir / "build" / "Build" / "Products" / "Release-iphonesimulator" / f"{IOS_SCHEME}.app"
    if not app.is_dir():
        raise BuildError(f"simulator app bundle not found after build: {app}")
    destination = Path(destination)
    destination.mkdir(parents=True, exist_ok=True)
    dest = destination / f"ios-release-{_stamp()}.app"
    await asyncio.to_thread(shutil.copytree, app, dest)
    return dest


def builder_for_platform(platform: str) -> Builder:
    if platform == "android":
        return build_android_async
    if platform == "ios":
        return build_ios_async
    raise ValueError(f"unsupported platform: {platform!r}")


async def build_async(platform: str, project_root: Path, destination: Path) -> Path:
    return await builder_for_platform(platform)(project_root, destination)
