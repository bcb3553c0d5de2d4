from __future__ import annotations

import json
from pathlib import Path

import pytest
from fakes import FakeUpdatesClient

from updates_harness.config import HarnessSettings
from updates_harness.crypto.signing import generate_private_key_pem, public_key_pem_from_private
from updates_harness.errors import InstallError
from updates_harness.orchestrator import HarnessSession
from updates_harness.scenarios import SCENARIOS, run_scenario, run_scenarios, write_results


def _settings(tmp_path: Path, project_root: Path, **kwargs) -> HarnessSettings:
    binary = tmp_path / "client.apk"
    binary.write_bytes(b"apk")
    values = dict(
        updates_host="127.0.0.1",
        bind_host="127.0.0.1",
        updates_port=0,
        time_scale=0.25,
        project_root=project_root,
        binary_path=binary,
        artifacts_dest=tmp_path / "artifacts",
    )
    values.update(kwargs)
    return HarnessSettings(**values)


def _session(settings: HarnessSettings, public_key_pem: str, client_cls=FakeUpdatesClient):
    holder: dict = {}
    client = client_cls(
        base_url_fn=lambda: holder["session"].server.base_url, public_key_pem=public_key_pem
    )
    session = HarnessSession(settings, client)
    holder["session"] = session
    return session, client


async def test_all_scenarios_pass_against_conforming_client(
    tmp_path: Path, project_root: Path, public_key_pem: str
) -> None:
    session, client = _session(_settings(tmp_path, project_root), public_key_pem)

    results = await run_scenarios(session)

    assert [r.name for r in results] == list(SCENARIOS)
    assert [(r.name, r.status, r.error) for r in results] == [
        (name, "pass", None) for name in SCENARIOS
    ]
    assert client.rejected_signatures == 0
    assert not client.installed
    assert not session.server.started

    path = write_results(results, tmp_path / "artifacts" / "results.json")
    assert json.loads(path.read_text(encoding="utf-8"))["passed"] == len(SCENARIOS)


async def test_update_is_applied_on_second_launch(
    tmp_path: Path, project_root: Path, public_key_pem: str
) -> None:
    session, client = _session(_settings(tmp_path, project_root), public_key_pem)
    async with session.case("manual") as ctx:
        manifest = await ctx.make_update("bundle1.js", "manual-1")
        await ctx.serve_update_with_manifest(manifest)
        mark = await ctx.install_and_start()
        assert await ctx.wait_for_response(10_000, since=mark) == "test"
        await ctx.sleep(2_000)
        assert ctx.consume_requested_static_files() == ["bundle1.js"]

        mark = await ctx.restart()
        request = await ctx.wait_for_update_request(10_000, since=mark)
        assert request.header("expo-current-update-id") == manifest.id
        assert await ctx.wait_for_response(10_000, since=mark) == "manual-1"
    assert client.launches == 2


class _SilentClient(FakeUpdatesClient):
    async def _launch(self) -> None:
        return None


async def test_silent_client_fails_with_timeout(
    tmp_path: Path, project_root: Path, public_key_pem: str
) -> None:
    settings = _settings(tmp_path, project_root, time_scale=0.02)
    session, _ = _session(settings, public_key_pem, _SilentClient)

    result = await run_scenario(session, "starts_stops_and_starts_again")

    assert result.status == "fail"
    assert "Timed out waiting for response" in (result.error or "")
    assert not session.server.started


async def test_client_rejecting_signature_fails_download_scenario(
    tmp_path: Path, project_root: Path
) -> None:
    # the client trusts a different key, so every signed manifest is rejected
    other_key = public_key_pem_from_private(generate_private_key_pem())
    session, client = _session(_settings(tmp_path, project_root), other_key)

    result = await run_scenario(session, "downloads_and_runs_update")

    assert result.status == "fail"
    assert "static files fetched" in (result.error or "")
    assert client.rejected_signatures == 1


async def test_install_error_is_reported_and_server_torn_down(
    tmp_path: Path, project_root: Path, public_key_pem: str
) -> None:
    settings = _settings(tmp_path, project_root, binary_path=tmp_path / "missing.apk")
    session, _ = _session(settings, public_key_pem)

    result = await run_scenario(session, "initial_request_includes_update_id_headers")

    assert result.status == "error"
    assert result.error is not None and result.error.startswith("InstallError")
    assert not session.server.started


async def test_case_propagates_body_errors_after_teardown(
    tmp_path: Path, project_root: Path, public_key_pem: str
) -> None:
    session, client = _session(_settings(tmp_path, project_root), public_key_pem)
    with pytest.raises(InstallError):
        async with session.case("boom") as ctx:
            await ctx.install_and_start()
            raise InstallError("boom")
    assert not client.installed
    assert not session.server.started


async def test_unknown_scenario_name(
    tmp_path: Path, project_root: Path, public_key_pem: str
) -> None:
    session, _ = _session(_settings(tmp_path, project_root), public_key_pem)
    with pytest.raises(KeyError, match="nope"):
        await run_scenarios(session, ["nope"])


async def test_build_runs_once_when_no_binary(
    tmp_path: Path, project_root: Path, public_key_pem: str
) -> None:
    built = tmp_path / "built.apk"
    built.write_bytes(b"apk")
    calls: list[tuple[Path, Path]] = []

    async def builder(root: Path, dest: Path) -> Path:
        calls.append((root, dest))
        return built

    settings = _settings(tmp_path, project_root, binary_path=None)
    client = FakeUpdatesClient(
        base_url_fn=lambda: "http://127.0.0.1:1", public_key_pem=public_key_pem
    )
    session = HarnessSession(settings, client, builder=builder)

    assert await session.build_once() == built
    assert await session.build_once() == built
    assert calls == [(project_root, tmp_path / "artifacts")]
