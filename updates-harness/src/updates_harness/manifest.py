"""Update manifest construction.

The manifest body is serialized exactly once (`serialize_manifest`); that
string is what gets signed and what the server sends, so the signature always
covers the bytes the client receives.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Sequence

from jsonschema import Draft202012Validator

from updates_harness.errors import ManifestValidationError

logger = logging.getLogger(__name__)

HashEncoding = Literal["base64url", "base64", "hex"]

_UUID_PATTERN = r"^[0-9a-fA-F]{8}-([0-9a-fA-F]{4}-){3}[0-9a-fA-F]{12}$"

NOTIFY_PLACEHOLDER = "/notify/test"
DEFAULT_CONTENT_TYPE = "application/javascript"

_ASSET_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["hash", "key", "contentType", "url"],
    "properties": {
        "hash": {"type": "string", "minLength": 1},
        "key": {"type": "string", "minLength": 1},
        "contentType": {"type": "string", "minLength": 1},
        "fileExtension": {"type": "string"},
        "url": {"type": "string", "pattern": "^https?://"},
    },
}

MANIFEST_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": [
        "id",
        "createdAt",
        "runtimeVersion",
        "launchAsset",
        "assets",
        "metadata",
        "extra",
    ],
    "properties": {
        "id": {
            "type": "string",
            "pattern": _UUID_PATTERN,
        },
        "createdAt": {"type": "string", "minLength": 1},
        "runtimeVersion": {"type": "string", "minLength": 1},
        "launchAsset": _ASSET_SCHEMA,
        "assets": {"type": "array", "items": _ASSET_SCHEMA},
        "metadata": {"type": "object"},
        "extra": {"type": "object"},
    },
}

_VALIDATOR = Draft202012Validator(MANIFEST_SCHEMA)


@dataclass(frozen=True)
class AssetRef:
    hash: str
    key: str
    content_type: str
    url: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "key": self.key,
            "contentType": self.content_type,
            "url": self.url,
        }


@dataclass(frozen=True)
class UpdateManifest:
    id: str
    created_at: str
    runtime_version: str
    launch_asset: AssetRef
    assets: Sequence[AssetRef] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)
    extra: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "runtimeVersion": self.runtime_version,
            "launchAsset": self.launch_asset.to_dict(),
            "assets": [a.to_dict() for a in self.assets],
            "metadata": dict(self.metadata),
            "extra": dict(self.extra),
        }


def serialize_manifest(manifest: UpdateManifest | Mapping[str, Any]) -> str:
    """Compact JSON in field order; this exact string is signed and served."""

    obj = manifest.to_dict() if isinstance(manifest, UpdateManifest) else dict(manifest)
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def validate_manifest(obj: UpdateManifest | Mapping[str, Any]) -> None:
    instance = obj.to_dict() if isinstance(obj, UpdateManifest) else dict(obj)
    errors = sorted(_VALIDATOR.iter_errors(instance), key=lambda e: list(e.path))
    if errors:
        msgs = []
        for e in errors[:20]:
            loc = "/".join([str(p) for p in e.path])
            msgs.append(f"- manifest:{loc}: {e.message}")
        if len(errors) > 20:
            msgs.append(f"... ({len(errors)-20} more)")
        raise ManifestValidationError("\n".join(msgs))


def content_hash(data: bytes, encoding: HashEncoding = "base64url") -> str:
    """SHA-256 of `data`.

    The protocol's asset `hash` is base64url without padding; `hex` and
    padded `base64` exist for callers that verify against other tooling.
    """

    digest = hashlib.sha256(data).digest()
    if encoding == "base64url":
        return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    if encoding == "base64":
        return base64.b64encode(digest).decode("ascii")
    if encoding == "hex":
        return digest.hex()
    raise ValueError(f"unknown hash encoding: {encoding!r}")


def file_content_hash(path: Path, encoding: HashEncoding = "base64url") -> str:
    return content_hash(Path(path).read_bytes(), encoding)


def format_created_at(dt: datetime | None = None) -> str:
    """ISO-8601 UTC with millisecond precision, e.g. `2024-01-01T00:00:00.000Z`."""

    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def hours_ago(hours: float, *, now: datetime | None = None) -> datetime:
    return (now or datetime.now(timezone.utc)) - timedelta(hours=hours)


def find_exported_bundle(dist_path: Path, platform: str) -> Path:
    """Locate the exported JS bundle for `platform` under `<dist>/bundles`."""

    bundles_dir = Path(dist_path) / "bundles"
    if bundles_dir.is_dir():
        candidates = sorted(
            p
            for p in bundles_dir.iterdir()
            if p.is_file() and p.name.startswith(f"{platform}-") and p.suffix == ".js"
        )
        if candidates:
            return candidates[0]

    metadata_path = Path(dist_path) / "metadata.json"
    if metadata_path.is_file():
        metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
        bundle = (
            (metadata.get("fileMetadata") or {}).get(platform, {}).get("bundle")
            if isinstance(metadata, dict)
            else None
        )
        if isinstance(bundle, str) and bundle:
            path = Path(dist_path) / bundle
            if path.is_file():
                return path

    raise FileNotFoundError(f"no exported {platform} bundle under {dist_path}")


def copy_bundle_to_static_folder(
    dist_path: Path,
    static_dir: Path,
    filename: str,
    notify_string: str | None,
    *,
    platform: str,
    encoding: HashEncoding = "base64url",
) -> str:
    """Write a (possibly re-tagged) bundle into the static folder; return its hash.

    The fixture app reports `/notify/test`; replacing that path lets a test tell
    which bundle is running from the report it receives.
    """

    source = find_exported_bundle(dist_path, platform)
    bundle = source.read_text(encoding="utf-8")
    if notify_string:
        if NOTIFY_PLACEHOLDER not in bundle:
            logger.warning("bundle %s has no %s placeholder", source, NOTIFY_PLACEHOLDER)
        bundle = bundle.replace(NOTIFY_PLACEHOLDER, f"/notify/{notify_string}")

    data = bundle.encode("utf-8")
    dest = Path(static_dir) / filename
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(data)
    logger.info("copied %s -> %s (%d bytes)", source.name, dest, len(data))
    return content_hash(data, encoding)


def build_manifest(
    *,
    launch_asset_hash: str,
    bundle_filename: str,
    base_url: str,
    runtime_version: str,
    key: str,
    created_at: datetime | str | None = None,
    content_type: str = DEFAULT_CONTENT_TYPE,
    update_id: str | None = None,
    assets: Sequence[AssetRef] = (),
    metadata: Mapping[str, Any] | None = None,
    extra: Mapping[str, Any] | None = None,
) -> UpdateManifest:
    if isinstance(created_at, str):
        created = created_at
    else:
        created = format_created_at(created_at)

    manifest = UpdateManifest(
        id=update_id or str(uuid.uuid4()),
        created_at=created,
        runtime_version=runtime_version,
        launch_asset=AssetRef(
            hash=launch_asset_hash,
            key=key,
            content_type=content_type,
            url=f"{base_url.rstrip('/')}/static/{bundle_filename}",
        ),
        assets=tuple(assets),
        metadata=dict(metadata or {}),
        extra=dict(extra or {}),
    )
    validate_manifest(manifest)
    return manifest
