"""In-process update server for end-to-end update tests.

One `UpdateTestServer` owns all mutable server state (request log, static
fetch log, current signed manifest). uvicorn runs on the caller's event loop,
so request handlers and the driver's waits never race.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import socket
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

import uvicorn

from updates_harness.errors import BindError, ServerStoppedError
from updates_harness.manifest import UpdateManifest, serialize_manifest
from updates_harness.server.app import build_app
from updates_harness.server.events import EventLog, RecordedRequest

logger = logging.getLogger(__name__)

_STARTUP_TIMEOUT_S = 5.0


@dataclass(frozen=True)
class SignedManifestEnvelope:
    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)

    def text(self) -> str:
        return self.body.decode("utf-8")


class UpdateTestServer:
    def __init__(
        self,
        static_dir: Path,
        *,
        host: str = "0.0.0.0",
        port: int = 0,
        advertised_host: Optional[str] = None,
        update_path: str = "/update",
        report_path: str = "/notify",
    ) -> None:
        self.static_dir = Path(static_dir)
        self.host = host
        self.default_port = int(port)
        self.advertised_host = advertised_host
        self.update_path = update_path
        self.report_path = report_path

        self.events = EventLog()
        self._envelope: Optional[SignedManifestEnvelope] = None
        self._content_types: dict[str, str] = {}
        self._server: Optional[uvicorn.Server] = None
        self._serve_task: Optional[asyncio.Task] = None
        self._port: Optional[int] = None
        self.app = build_app(self)

    # ------------------------------- properties ------------------------------

    @property
    def started(self) -> bool:
        return self._server is not None

    @property
    def port(self) -> int:
        if self._port is None:
            raise ServerStoppedError("update server is not running")
        return self._port

    @property
    def base_url(self) -> str:
        host = self.advertised_host
        if not host:
            host = "127.0.0.1" if self.host in ("0.0.0.0", "::", "") else self.host
        return f"http://{host}:{self.port}"

    @property
    def envelope(self) -> Optional[SignedManifestEnvelope]:
        return self._envelope

    @property
    def requests(self) -> tuple[RecordedRequest, ...]:
        return self.events.events

    def cursor(self) -> int:
        return self.events.cursor()

    # -------------------------------- lifecycle ------------------------------

    async def start(self, port: Optional[int] = None) -> None:
        if self._server is not None:
            return

        want = self.default_port if port is None else int(port)
        sock = socket.socket(socket.AF_INET6 if ":" in self.host else socket.AF_INET)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, want))
        except OSError as e:
            sock.close()
            raise BindError(f"cannot bind update server to {self.host}:{want}: {e}") from e

        self.static_dir.mkdir(parents=True, exist_ok=True)
        config = uvicorn.Config(
            self.app,
            log_level="warning",
            access_log=False,
            lifespan="off",
            loop="none",
            timeout_graceful_shutdown=1,
        )
        server = uvicorn.Server(config)
        task = asyncio.create_task(server.serve(sockets=[sock]))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + _STARTUP_TIMEOUT_S
        while not server.started:
            if task.done() or loop.time() >= deadline:
                server.should_exit = True
                exc = task.exception() if task.done() else None
                if not task.done():
                    await task
                sock.close()
                raise BindError(f"update server failed to start on {self.host}:{want}") from exc
            await asyncio.sleep(0.01)

        self._server = server
        self._serve_task = task
        self._port = int(sock.getsockname()[1])
        logger.info("update server listening on %s:%d", self.host, self._port)

    async def stop(self) -> None:
        rejected = self.events.close()
        if rejected:
            logger.info("rejected %d pending wait(s) on stop", rejected)
        self._envelope = None

        server = self._server
        task = self._serve_task
        self._server = None
        self._serve_task = None
        self._port = None
        if server is None:
            return

        server.should_exit = True
        if task is not None:
            await task
        # requests drained during graceful shutdown must not leak into the next start
        self.events.close()
        self._envelope = None
        logger.info("update server stopped")

    async def __aenter__(self) -> "UpdateTestServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[no-untyped-def]
        await self.stop()

    # --------------------------------- serving -------------------------------

    def serve_manifest(
        self,
        manifest: UpdateManifest | Mapping[str, Any] | str | bytes,
        headers: Optional[Mapping[str, str]] = None,
    ) -> SignedManifestEnvelope:
        """Serve `manifest` on the update endpoint until replaced or stopped.

        Pass the exact string that was signed: objects are serialized here, and
        a signature computed over a different serialization will not verify.
        """

        if isinstance(manifest, bytes):
            body = manifest
        elif isinstance(manifest, str):
            body = manifest.encode("utf-8")
        else:
            body = serialize_manifest(manifest).encode("utf-8")
        envelope = SignedManifestEnvelope(
            body=body,
            headers=MappingProxyType({str(k).lower(): str(v) for k, v in (headers or {}).items()}),
        )
        self._envelope = envelope
        logger.info("serving manifest (%d bytes)", len(body))
        return envelope

    def clear_manifest(self) -> None:
        self._envelope = None

    def register_asset(self, filename: str, content_type: str) -> None:
        self._content_types[filename] = content_type

    def content_type_for(self, filename: str) -> str:
        registered = self._content_types.get(filename)
        if registered:
            return registered
        guessed, _ = mimetypes.guess_type(filename)
        return guessed or "application/octet-stream"

    def static_path(self, filename: str) -> Optional[Path]:
        root = self.static_dir.resolve()
        path = (root / filename).resolve()
        if path.parent != root or not path.is_file():
            return None
        return path

    # ---------------------------------- waits --------------------------------

    def _require_running(self) -> None:
        if self._server is None:
            raise ServerStoppedError("update server is not running")

    async def wait_for_update_request(
        self, timeout_ms: float, *, since: Optional[int] = None
    ) -> RecordedRequest:
        self._require_running()
        return await self.events.wait_for("update", timeout_ms, since=since)

    async def wait_for_response(self, timeout_ms: float, *, since: Optional[int] = None) -> str:
        self._require_running()
        event = await self.events.wait_for("report", timeout_ms, since=since)
        return event.report or ""

    async def wait_for_static_request(
        self, timeout_ms: float, *, since: Optional[int] = None, filename: Optional[str] = None
    ) -> RecordedRequest:
        self._require_running()
        predicate = None if filename is None else (lambda e: e.static_file == filename)
        return await self.events.wait_for("static", timeout_ms, since=since, predicate=predicate)

    def consume_requested_static_files(self) -> list[str]:
        return self.events.consume_static_files()
