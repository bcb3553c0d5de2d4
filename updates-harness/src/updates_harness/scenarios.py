"""Protocol scenarios run against a real (or fake) client.

Each scenario takes a `CaseContext` and raises `ScenarioFailure` when an
observable expectation does not hold.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Sequence

from updates_harness.errors import ScenarioFailure, WaitTimeoutError
from updates_harness.manifest import hours_ago
from updates_harness.orchestrator import CaseContext, HarnessSession
from updates_harness.server.events import RecordedRequest

logger = logging.getLogger(__name__)

Scenario = Callable[[CaseContext], Awaitable[None]]

EMBEDDED_UPDATE_ID = "expo-embedded-update-id"
CURRENT_UPDATE_ID = "expo-current-update-id"
BASELINE_REPORT = "test"
CASE_TIMEOUT_MS = 300_000


def expect_equal(actual: Any, expected: Any, what: str) -> None:
    if actual != expected:
        raise ScenarioFailure(f"{what}: expected {expected!r}, got {actual!r}")


def expect_header(request: RecordedRequest, name: str) -> str:
    value = request.header(name)
    if value is None:
        raise ScenarioFailure(f"update request #{request.seq} has no {name} header")
    return value


async def starts_stops_and_starts_again(ctx: CaseContext) -> None:
    mark = await ctx.install_and_start()
    response = await ctx.wait_for_response(10_000, since=mark)
    expect_equal(response, BASELINE_REPORT, "report after first launch")
    await ctx.stop_app()

    try:
        late = await ctx.wait_for_response(5_000)
    except WaitTimeoutError:
        pass
    else:
        raise ScenarioFailure(f"received report {late!r} while the app was stopped")

    mark = await ctx.start_app()
    response = await ctx.wait_for_response(10_000, since=mark)
    expect_equal(response, BASELINE_REPORT, "report after relaunch")


async def initial_request_includes_update_id_headers(ctx: CaseContext) -> None:
    mark = await ctx.install_and_start()
    request = await ctx.wait_for_update_request(10_000, since=mark)
    embedded = expect_header(request, EMBEDDED_UPDATE_ID)
    current = expect_header(request, CURRENT_UPDATE_ID)
    # before any update is applied the client runs its embedded update
    expect_equal(current, embedded, f"{CURRENT_UPDATE_ID} before any update")


async def downloads_and_runs_update(ctx: CaseContext) -> None:
    notify = "test-update-1"
    manifest = await ctx.make_update("bundle1.js", notify)
    await ctx.serve_update_with_manifest(manifest)

    mark = await ctx.install_and_start()
    first = await ctx.wait_for_update_request(10_000, since=mark)
    response = await ctx.wait_for_response(10_000, since=mark)
    expect_equal(response, BASELINE_REPORT, "report before the update is launched")

    # background download window
    await ctx.sleep(2_000)
    fetched = ctx.consume_requested_static_files()
    expect_equal(len(fetched), 1, f"static files fetched in background ({fetched})")

    mark = await ctx.restart()
    second = await ctx.wait_for_update_request(10_000, since=mark)
    updated = await ctx.wait_for_response(10_000, since=mark)
    expect_equal(updated, notify, "report after relaunch")

    expect_equal(
        expect_header(second, EMBEDDED_UPDATE_ID),
        expect_header(first, EMBEDDED_UPDATE_ID),
        f"{EMBEDDED_UPDATE_ID} across launches",
    )
    expect_equal(expect_header(second, CURRENT_UPDATE_ID), manifest.id, CURRENT_UPDATE_ID)


async def does_not_download_older_update(ctx: CaseContext) -> None:
    manifest = await ctx.make_update("bundle-old.js", "test-update-older", created_at=hours_ago(24))
    await ctx.serve_update_with_manifest(manifest)

    mark = await ctx.install_and_start()
    await ctx.wait_for_update_request(10_000, since=mark)
    response = await ctx.wait_for_response(10_000, since=mark)
    expect_equal(response, BASELINE_REPORT, "report on first launch")

    # long enough that a download would have happened
    await ctx.sleep(3_000)
    fetched = ctx.consume_requested_static_files()
    expect_equal(fetched, [], "static files fetched for an older update")

    mark = await ctx.restart()
    response = await ctx.wait_for_response(10_000, since=mark)
    expect_equal(response, BASELINE_REPORT, "report after relaunch")


async def does_not_download_update_older_than_current(ctx: CaseContext) -> None:
    newer = await ctx.make_update("bundle-a.js", "test-update-a")
    await ctx.serve_update_with_manifest(newer)
    mark = await ctx.install_and_start()
    await ctx.wait_for_response(10_000, since=mark)
    await ctx.sleep(2_000)
    fetched = ctx.consume_requested_static_files()
    expect_equal(fetched, ["bundle-a.js"], "static files fetched for the newer update")

    mark = await ctx.restart()
    response = await ctx.wait_for_response(10_000, since=mark)
    expect_equal(response, "test-update-a", "report after applying the newer update")

    older = await ctx.make_update("bundle-b.js", "test-update-b", created_at=hours_ago(24))
    await ctx.serve_update_with_manifest(older)
    mark = await ctx.restart()
    await ctx.wait_for_update_request(10_000, since=mark)
    await ctx.sleep(3_000)
    fetched = ctx.consume_requested_static_files()
    expect_equal(fetched, [], "static files fetched for an update older than the running one")

    mark = await ctx.restart()
    response = await ctx.wait_for_response(10_000, since=mark)
    expect_equal(response, "test-update-a", "report after relaunch")


SCENARIOS: Dict[str, Scenario] = {
    "starts_stops_and_starts_again": starts_stops_and_starts_again,
    "initial_request_includes_update_id_headers": initial_request_includes_update_id_headers,
    "downloads_and_runs_update": downloads_and_runs_update,
    "does_not_download_older_update": does_not_download_older_update,
    "does_not_download_update_older_than_current": does_not_download_update_older_than_current,
}


@dataclass(frozen=True)
class ScenarioResult:
    name: str
    status: Literal["pass", "fail", "error"]
    duration_s: float
    error: Optional[str] = None


async def run_scenario(
    session: HarnessSession, name: str, *, case_timeout_ms: float = CASE_TIMEOUT_MS
) -> ScenarioResult:
    scenario = SCENARIOS[name]
    t0 = time.monotonic()
    status: Literal["pass", "fail", "error"] = "pass"
    error: Optional[str] = None
    try:
        async with session.case(name) as ctx:
            await asyncio.wait_for(
                scenario(ctx), timeout=session.settings.scaled_ms(case_timeout_ms) / 1000.0
            )
    except (ScenarioFailure, WaitTimeoutError) as e:
        status, error = "fail", f"{type(e).__name__}: {e}"
    except Exception as e:
        status, error = "error", f"{type(e).__name__}: {e}"
    duration = round(time.monotonic() - t0, 3)
    if status == "pass":
        logger.info("scenario %s passed in %.1fs", name, duration)
    else:
        logger.error("scenario %s: %s: %s", name, status, error)
    return ScenarioResult(name=name, status=status, duration_s=duration, error=error)


async def run_scenarios(
    session: HarnessSession, names: Optional[Sequence[str]] = None
) -> List[ScenarioResult]:
    selected = list(names) if names else list(SCENARIOS)
    unknown = [n for n in selected if n not in SCENARIOS]
    if unknown:
        raise KeyError(f"unknown scenario(s): {', '.join(unknown)}")

    await session.build_once()
    results = []
    for name in selected:
        results.append(await run_scenario(session, name))
    return results


def write_results(results: Sequence[ScenarioResult], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "results": [asdict(r) for r in results],
        "passed": sum(1 for r in results if r.status == "pass"),
        "total": len(results),
    }
    path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
    return path
