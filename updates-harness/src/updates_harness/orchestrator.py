"""Test orchestration: one build per session, one clean server per case.

Typical use:

    session = HarnessSession(settings, driver_for_platform(settings))
    async with session.case("downloads update") as ctx:
        manifest = await ctx.make_update("bundle1.js", "test-update-1")
        await ctx.serve_update_with_manifest(manifest)
        mark = await ctx.install_and_start()
        request = await ctx.wait_for_update_request(10_000, since=mark)

Waits take unscaled milliseconds; `settings.scaled_ms` applies the CI bias.
Lifecycle calls return the log cursor taken *before* the action, so a wait
passed `since=mark` also sees events the client sent before the wait began.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, List, Optional

from updates_harness.build import Builder, builder_for_platform
from updates_harness.config import HarnessSettings
from updates_harness.crypto.signing import read_private_key_pem_async, signed_manifest_headers
from updates_harness.errors import ConfigError
from updates_harness.lifecycle.base import ClientDriver
from updates_harness.manifest import (
    DEFAULT_CONTENT_TYPE,
    UpdateManifest,
    build_manifest,
    copy_bundle_to_static_folder,
    serialize_manifest,
)
from updates_harness.server.events import RecordedRequest
from updates_harness.server.update_server import SignedManifestEnvelope, UpdateTestServer

logger = logging.getLogger(__name__)


def server_for_settings(settings: HarnessSettings) -> UpdateTestServer:
    return UpdateTestServer(
        settings.resolved_static_dir,
        host=settings.bind_host,
        port=settings.updates_port,
        advertised_host=settings.updates_host,
        update_path=settings.update_path,
        report_path=settings.report_path,
    )


class HarnessSession:
    def __init__(
        self,
        settings: HarnessSettings,
        driver: ClientDriver,
        *,
        server: Optional[UpdateTestServer] = None,
        builder: Optional[Builder] = None,
    ) -> None:
        self.settings = settings
        self.driver = driver
        self.server = server or server_for_settings(settings)
        self._builder = builder
        self._binary_path: Optional[Path] = settings.binary_path
        self._build_lock = asyncio.Lock()

    @property
    def binary_path(self) -> Optional[Path]:
        return self._binary_path

    async def build_once(self) -> Path:
        """Build the client binary on first use; later calls reuse it."""

        async with self._build_lock:
            if self._binary_path is None:
                if self.settings.project_root is None:
                    raise ConfigError("no binary_path and no project_root to build from")
                builder = self._builder or builder_for_platform(self.settings.platform)
                logger.info(
                    "building %s client from %s",
                    self.settings.platform,
                    self.settings.project_root,
                )
                self._binary_path = await builder(
                    self.settings.project_root, self.settings.artifacts_dest
                )
                logger.info("client binary: %s", self._binary_path)
        return self._binary_path

    @contextlib.asynccontextmanager
    async def case(self, name: str = "case") -> AsyncIterator["CaseContext"]:
        binary = await self.build_once()
        await self.server.start(self.settings.updates_port)
        ctx = CaseContext(self, binary, name)
        logger.info("case %s: started (server %s)", name, self.server.base_url)
        try:
            yield ctx
        except BaseException:
            await self._teardown(ctx, reraise=False)
            raise
        else:
            await self._teardown(ctx, reraise=True)

    async def _teardown(self, ctx: "CaseContext", *, reraise: bool) -> None:
        steps = []
        if ctx.installed:
            steps.append(("stop client", self.driver.stop))
            steps.append(("uninstall client", self.driver.uninstall))
        steps.append(("stop server", self.server.stop))

        first_error: Optional[BaseException] = None
        for label, step in steps:
            try:
                await step()
            except Exception as e:
                logger.error("case %s: %s failed: %s", ctx.name, label, e)
                if first_error is None:
                    first_error = e
        ctx.installed = False
        logger.info("case %s: torn down", ctx.name)
        if reraise and first_error is not None:
            raise first_error


class CaseContext:
    def __init__(self, session: HarnessSession, binary_path: Path, name: str) -> None:
        self.session = session
        self.binary_path = binary_path
        self.name = name
        self.installed = False

    @property
    def settings(self) -> HarnessSettings:
        return self.session.settings

    @property
    def server(self) -> UpdateTestServer:
        return self.session.server

    @property
    def driver(self) -> ClientDriver:
        return self.session.driver

    def mark(self) -> int:
        return self.server.cursor()

    # ------------------------------- updates ---------------------------------

    async def make_update(
        self,
        bundle_filename: str,
        notify_string: str,
        *,
        created_at: Optional[datetime] = None,
        key: Optional[str] = None,
    ) -> UpdateManifest:
        """Publish a re-tagged bundle to the static folder and describe it."""

        bundle_hash = await asyncio.to_thread(
            copy_bundle_to_static_folder,
            self.settings.dist_path,
            self.server.static_dir,
            bundle_filename,
            notify_string,
            platform=self.settings.platform,
        )
        self.server.register_asset(bundle_filename, DEFAULT_CONTENT_TYPE)
        return build_manifest(
            launch_asset_hash=bundle_hash,
            bundle_filename=bundle_filename,
            base_url=self.server.base_url,
            runtime_version=self.settings.runtime_version,
            key=key or f"{notify_string}-key",
            created_at=created_at,
        )

    async def serve_update_with_manifest(self, manifest: UpdateManifest) -> SignedManifestEnvelope:
        private_key = await read_private_key_pem_async(self.settings.resolved_private_key_path)
        body = serialize_manifest(manifest)
        headers = signed_manifest_headers(body, private_key, key_id=self.settings.key_id)
        return self.server.serve_manifest(body, headers)

    # ------------------------------ lifecycle --------------------------------

    async def install_and_start(self) -> int:
        await self.driver.install(self.binary_path)
        self.installed = True
        return await self.start_app()

    async def start_app(self) -> int:
        mark = self.mark()
        await self.driver.start()
        return mark

    async def stop_app(self) -> None:
        await self.driver.stop()

    async def restart(self) -> int:
        await self.stop_app()
        return await self.start_app()

    # -------------------------------- waits ----------------------------------

    def scaled(self, ms: float) -> float:
        return self.settings.scaled_ms(ms)

    async def sleep(self, ms: float) -> None:
        await asyncio.sleep(self.scaled(ms) / 1000.0)

    async def wait_for_update_request(
        self, timeout_ms: float, *, since: Optional[int] = None
    ) -> RecordedRequest:
        return await self.server.wait_for_update_request(self.scaled(timeout_ms), since=since)

    async def wait_for_response(self, timeout_ms: float, *, since: Optional[int] = None) -> str:
        return await self.server.wait_for_response(self.scaled(timeout_ms), since=since)

    def consume_requested_static_files(self) -> List[str]:
        return self.server.consume_requested_static_files()
