from __future__ import annotations

import json
from typing import TYPE_CHECKING, Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import FileResponse, PlainTextResponse, Response
from starlette.routing import Route

if TYPE_CHECKING:
    from updates_harness.server.update_server import UpdateTestServer

_ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def _decode_report(body: bytes, content_type: Optional[str]) -> str:
    text = body.decode("utf-8", errors="replace")
    if content_type and "json" in content_type.lower():
        try:
            obj = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(obj, str):
            return obj
        if isinstance(obj, dict) and isinstance(obj.get("message"), str):
            return obj["message"]
    return text


def build_app(server: "UpdateTestServer") -> Starlette:
    """HTTP surface of the update server; every request lands in `server.events`."""

    async def _record(request: Request, kind: str, **extra) -> None:
        body = await request.body()
        server.events.record(
            kind=kind,  # type: ignore[arg-type]
            method=request.method,
            path=request.url.path,
            headers=dict(request.headers.items()),
            body=body,
            **extra,
        )

    async def update_endpoint(request: Request) -> Response:
        await _record(request, "update")
        envelope = server.envelope
        if envelope is None:
            return Response(status_code=204)
        headers = {"cache-control": "private, max-age=0", **envelope.headers}
        return Response(
            envelope.body, status_code=200, media_type="application/json", headers=headers
        )

    async def static_file(request: Request) -> Response:
        filename = request.path_params["filename"]
        await _record(request, "static", static_file=filename)
        path = server.static_path(filename)
        if path is None:
            return PlainTextResponse("Not Found", status_code=404)
        return FileResponse(path, media_type=server.content_type_for(filename))

    async def report(request: Request) -> Response:
        body = await request.body()
        payload = request.path_params.get("payload")
        if payload is None:
            payload = _decode_report(body, request.headers.get("content-type"))
        server.events.record(
            kind="report",
            method=request.method,
            path=request.url.path,
            headers=dict(request.headers.items()),
            body=body,
            report=payload,
        )
        return PlainTextResponse("Received request")

    async def not_found(request: Request) -> Response:
        await _record(request, "other")
        return PlainTextResponse("Not Found", status_code=404)

    report_path = server.report_path.rstrip("/")
    routes = [
        Route(server.update_path, update_endpoint, methods=["GET", "POST"]),
        Route("/static/{filename}", static_file, methods=["GET"]),
        Route(report_path, report, methods=["POST"]),
        Route(report_path + "/{payload}", report, methods=["GET", "POST"]),
        Route("/{path:path}", not_found, methods=_ALL_METHODS),
    ]
    return Starlette(routes=routes)
