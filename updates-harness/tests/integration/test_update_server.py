from __future__ import annotations

import asyncio
import json
import socket
from pathlib import Path

import httpx
import pytest

from updates_harness.crypto.signing import signed_manifest_headers, verify_rsa_sha256
from updates_harness.errors import BindError, ServerStoppedError, WaitTimeoutError
from updates_harness.manifest import build_manifest, serialize_manifest
from updates_harness.server.update_server import UpdateTestServer
from updates_harness.structured_headers import parse_dictionary


@pytest.fixture
async def server(tmp_path: Path):
    srv = UpdateTestServer(tmp_path / "static", host="127.0.0.1", port=0)
    await srv.start()
    try:
        yield srv
    finally:
        await srv.stop()


async def test_no_manifest_means_204_and_request_is_logged(server: UpdateTestServer) -> None:
    async with httpx.AsyncClient(base_url=server.base_url) as client:
        mark = server.cursor()
        resp = await client.get(
            "/update",
            headers={"expo-embedded-update-id": "e-1", "expo-current-update-id": "e-1"},
        )
    assert resp.status_code == 204
    assert resp.content == b""

    request = await server.wait_for_update_request(1000, since=mark)
    assert request.method == "GET"
    assert request.header("expo-embedded-update-id") == "e-1"
    assert request.header("Expo-Current-Update-Id") == "e-1"


async def test_signed_manifest_is_served_byte_exact(
    server: UpdateTestServer, private_key_pem: str, public_key_pem: str
) -> None:
    manifest = build_manifest(
        launch_asset_hash="abc",
        bundle_filename="bundle1.js",
        base_url=server.base_url,
        runtime_version="1.0.0",
        key="k",
    )
    body = serialize_manifest(manifest)
    server.serve_manifest(body, signed_manifest_headers(body, private_key_pem, key_id="main"))

    async with httpx.AsyncClient(base_url=server.base_url) as client:
        resp = await client.get("/update")

    assert resp.status_code == 200
    assert resp.content == body.encode("utf-8")
    assert resp.headers["content-type"].startswith("application/json")
    assert resp.headers["expo-protocol-version"] == "0"
    assert resp.headers["cache-control"] == "private, max-age=0"
    sig = parse_dictionary(resp.headers["expo-signature"])
    assert sig["keyid"][0] == "main"
    assert verify_rsa_sha256(resp.content, sig["sig"][0], public_key_pem)
    assert json.loads(resp.content)["id"] == manifest.id


async def test_clear_manifest_returns_to_204(server: UpdateTestServer) -> None:
    server.serve_manifest('{"id":"x"}', {})
    server.clear_manifest()
    async with httpx.AsyncClient(base_url=server.base_url) as client:
        assert (await client.get("/update")).status_code == 204


async def test_static_files_use_registered_content_type(server: UpdateTestServer) -> None:
    (server.static_dir / "bundle1.js").write_text("var x = 1;", encoding="utf-8")
    (server.static_dir / "asset.bin").write_bytes(b"\x00\x01")
    server.register_asset("asset.bin", "image/png")

    async with httpx.AsyncClient(base_url=server.base_url) as client:
        js = await client.get("/static/bundle1.js")
        png = await client.get("/static/asset.bin")
        missing = await client.get("/static/nope.js")

    assert js.status_code == 200
    assert js.text == "var x = 1;"
    assert "javascript" in js.headers["content-type"]
    assert png.headers["content-type"] == "image/png"
    assert missing.status_code == 404
    assert server.consume_requested_static_files() == ["bundle1.js", "asset.bin", "nope.js"]
    assert server.consume_requested_static_files() == []


async def test_static_path_refuses_traversal(server: UpdateTestServer, tmp_path: Path) -> None:
    (tmp_path / "secret.txt").write_text("s", encoding="utf-8")
    assert server.static_path("../secret.txt") is None


async def test_reports_by_path_text_and_json(server: UpdateTestServer) -> None:
    async with httpx.AsyncClient(base_url=server.base_url) as client:
        mark = server.cursor()
        resp = await client.post("/notify/test-update-1")
        await client.post("/notify", content=b"plain text")
        await client.post("/notify", json="json string")
        await client.post("/notify", json={"message": "wrapped"})

    assert resp.text == "Received request"
    got = [await server.wait_for_response(1000, since=mark) for _ in range(4)]
    assert got == ["test-update-1", "plain text", "json string", "wrapped"]


async def test_wait_for_response_times_out_and_late_report_is_logged(
    server: UpdateTestServer,
) -> None:
    with pytest.raises(WaitTimeoutError, match="Timed out waiting for response after 50ms"):
        await server.wait_for_response(50)
    async with httpx.AsyncClient(base_url=server.base_url) as client:
        await client.post("/notify/late")
    assert server.requests[-1].report == "late"
    assert server.events.pending_waits == 0


async def test_unknown_paths_are_recorded_as_404(server: UpdateTestServer) -> None:
    async with httpx.AsyncClient(base_url=server.base_url) as client:
        resp = await client.get("/favicon.ico")
    assert resp.status_code == 404
    assert server.requests[-1].kind == "other"
    assert server.requests[-1].path == "/favicon.ico"


async def test_wait_for_static_request_by_filename(server: UpdateTestServer) -> None:
    (server.static_dir / "b.js").write_text("b", encoding="utf-8")
    waiter = asyncio.create_task(server.wait_for_static_request(2000, filename="b.js"))
    await asyncio.sleep(0)
    async with httpx.AsyncClient(base_url=server.base_url) as client:
        await client.get("/static/a.js")
        await client.get("/static/b.js")
    assert (await waiter).static_file == "b.js"


async def test_stop_rejects_pending_wait(tmp_path: Path) -> None:
    srv = UpdateTestServer(tmp_path / "static", host="127.0.0.1")
    await srv.start()
    update_waiter = asyncio.create_task(srv.wait_for_update_request(10_000))
    report_waiter = asyncio.create_task(srv.wait_for_response(10_000))
    await asyncio.sleep(0)
    await srv.stop()
    with pytest.raises(ServerStoppedError, match="update request"):
        await update_waiter
    with pytest.raises(ServerStoppedError, match="response"):
        await report_waiter
    assert not srv.started
    with pytest.raises(ServerStoppedError):
        await srv.wait_for_response(10)


async def test_request_drained_during_stop_does_not_reach_next_start(tmp_path: Path) -> None:
    srv = UpdateTestServer(tmp_path / "static", host="127.0.0.1")
    await srv.start()
    first_chunk_sent = asyncio.Event()

    async def slow_body():
        yield b"a"
        first_chunk_sent.set()
        await asyncio.sleep(0.3)
        yield b"b"

    async with httpx.AsyncClient(base_url=srv.base_url) as client:
        request = asyncio.create_task(client.request("GET", "/static/old.js", content=slow_body()))
        await first_chunk_sent.wait()
        await asyncio.sleep(0.05)
        await srv.stop()
        try:
            await request
        except httpx.HTTPError:
            pass

    await srv.start()
    try:
        assert srv.consume_requested_static_files() == []
        assert srv.cursor() == 0
        assert srv.requests == ()
        assert srv.envelope is None
    finally:
        await srv.stop()


async def test_start_is_idempotent_and_restartable(tmp_path: Path) -> None:
    srv = UpdateTestServer(tmp_path / "static", host="127.0.0.1")
    async with srv:
        port = srv.port
        await srv.start()
        assert srv.port == port
    assert not srv.started
    await srv.stop()

    async with srv:
        async with httpx.AsyncClient(base_url=srv.base_url) as client:
            assert (await client.get("/update")).status_code == 204
        # the log restarts empty after a stop
        assert len(srv.requests) == 1


async def test_occupied_port_is_bind_error(tmp_path: Path) -> None:
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen(1)
    try:
        port = blocker.getsockname()[1]
        srv = UpdateTestServer(tmp_path / "static", host="127.0.0.1", port=port)
        with pytest.raises(BindError):
            await srv.start()
        assert not srv.started
    finally:
        blocker.close()


def test_advertised_host_in_base_url(tmp_path: Path) -> None:
    srv = UpdateTestServer(tmp_path, advertised_host="10.0.2.2")
    srv._port = 4747
    assert srv.base_url == "http://10.0.2.2:4747"
