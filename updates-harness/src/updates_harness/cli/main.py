from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Optional, Sequence

from updates_harness.config import load_settings
from updates_harness.crypto.signing import (
    DEFAULT_KEY_ID,
    generate_private_key_pem,
    load_private_key_pem,
    public_key_pem_from_private,
    signed_manifest_headers,
    verify_rsa_sha256,
)
from updates_harness.errors import HarnessError
from updates_harness.lifecycle import driver_for_platform
from updates_harness.manifest import serialize_manifest, validate_manifest
from updates_harness.orchestrator import HarnessSession, server_for_settings
from updates_harness.scenarios import SCENARIOS, run_scenarios, write_results
from updates_harness.structured_headers import StructuredHeaderError, parse_dictionary

logger = logging.getLogger(__name__)


def _read_manifest(path: Path) -> str:
    # json.loads keeps key order, so the served body matches the file's field order
    obj = json.loads(path.read_text(encoding="utf-8"))
    validate_manifest(obj)
    return serialize_manifest(obj)


async def _serve(args: argparse.Namespace) -> int:
    settings = load_settings(
        args.config,
        overrides={
            "bind_host": args.host,
            "updates_port": args.port,
            "static_dir": args.static_dir,
            "private_key_path": args.private_key,
        },
    )
    server = server_for_settings(settings)
    await server.start()
    try:
        if args.manifest is not None:
            body = _read_manifest(args.manifest)
            pem = load_private_key_pem(settings.resolved_private_key_path)
            server.serve_manifest(body, signed_manifest_headers(body, pem, key_id=settings.key_id))
        print(f"update server listening on {server.base_url}{settings.update_path}")
        await asyncio.Event().wait()
    finally:
        total = len(server.requests)
        await server.stop()
        print(f"served {total} request(s)")
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    try:
        return asyncio.run(_serve(args))
    except KeyboardInterrupt:
        return 0


def _cmd_sign(args: argparse.Namespace) -> int:
    body = _read_manifest(args.manifest)
    headers = signed_manifest_headers(
        body, load_private_key_pem(args.private_key), key_id=args.key_id
    )
    for name, value in headers.items():
        print(f"{name}: {value}")
    return 0


def _cmd_verify(args: argparse.Namespace) -> int:
    # verify the body bytes as served; no re-serialization here
    body = args.body.read_bytes()
    try:
        sig = parse_dictionary(args.signature)["sig"][0]
    except (StructuredHeaderError, KeyError) as e:
        print(f"[ERROR] bad expo-signature header: {e}")
        return 2
    public_pem = args.public_key.read_text(encoding="utf-8")
    if isinstance(sig, str) and verify_rsa_sha256(body, sig, public_pem):
        print("signature OK")
        return 0
    print("signature INVALID")
    return 1


def _cmd_keygen(args: argparse.Namespace) -> int:
    out: Path = args.output_dir
    out.mkdir(parents=True, exist_ok=True)
    private_path = out / "private-key.pem"
    if private_path.exists() and not args.force:
        print(f"[ERROR] {private_path} exists (use --force to overwrite)")
        return 2
    pem = generate_private_key_pem(args.key_size)
    private_path.write_text(pem, encoding="utf-8")
    (out / "public-key.pem").write_text(public_key_pem_from_private(pem), encoding="utf-8")
    print(f"wrote {private_path} and {out / 'public-key.pem'}")
    return 0


async def _run(args: argparse.Namespace) -> int:
    settings = load_settings(
        args.config,
        overrides={"platform": args.platform, "binary_path": args.binary},
    )
    session = HarnessSession(settings, driver_for_platform(settings))
    results = await run_scenarios(session, args.scenario or None)
    results_path = write_results(results, settings.artifacts_dest / "results.json")

    for r in results:
        line = f"[{r.status.upper()}] {r.name} ({r.duration_s:.1f}s)"
        if r.error:
            line += f": {r.error}"
        print(line)
    print(f"results: {results_path}")
    return 0 if all(r.status == "pass" for r in results) else 1


def _cmd_run(args: argparse.Namespace) -> int:
    return asyncio.run(_run(args))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="updates-harness",
        description="End-to-end harness for over-the-air app updates.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every request (DEBUG).")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("serve", help="Run the update server standalone.")
    p.add_argument("--config", type=Path, default=None, help="YAML/JSON settings file.")
    p.add_argument("--host", type=str, default=None, help="Bind host (default 0.0.0.0).")
    p.add_argument("--port", type=int, default=None, help="Bind port (default UPDATES_PORT).")
    p.add_argument("--static-dir", type=Path, default=None, help="Static asset directory.")
    p.add_argument("--manifest", type=Path, default=None, help="Manifest JSON to sign and serve.")
    p.add_argument("--private-key", type=Path, default=None, help="PEM private key path.")
    p.set_defaults(func=_cmd_serve)

    p = sub.add_parser("sign", help="Print signed-manifest headers for a manifest file.")
    p.add_argument("--manifest", type=Path, required=True)
    p.add_argument("--private-key", type=Path, required=True)
    p.add_argument("--key-id", type=str, default=DEFAULT_KEY_ID)
    p.set_defaults(func=_cmd_sign)

    p = sub.add_parser("verify", help="Check an expo-signature header against a manifest body.")
    p.add_argument("--body", type=Path, required=True, help="Manifest body exactly as served.")
    p.add_argument("--signature", type=str, required=True, help="expo-signature header value.")
    p.add_argument("--public-key", type=Path, required=True)
    p.set_defaults(func=_cmd_verify)

    p = sub.add_parser("keygen", help="Generate an RSA code signing key pair.")
    p.add_argument("--output-dir", type=Path, default=Path("keys"))
    p.add_argument("--key-size", type=int, default=2048)
    p.add_argument("--force", action="store_true")
    p.set_defaults(func=_cmd_keygen)

    p = sub.add_parser("run", help="Run update scenarios against a device or simulator.")
    p.add_argument("--config", type=Path, default=None, help="YAML/JSON settings file.")
    p.add_argument(
        "--scenario",
        action="append",
        choices=sorted(SCENARIOS),
        help="Scenario to run (repeatable; default: all).",
    )
    p.add_argument("--platform", type=str, default=None, choices=["android", "ios"])
    p.add_argument(
        "--binary", type=Path, default=None, help="Prebuilt client binary (skips build)."
    )
    p.set_defaults(func=_cmd_run)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s",
    )
    try:
        return int(args.func(args))
    except (HarnessError, FileNotFoundError) as e:
        print(f"[ERROR] {e}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
