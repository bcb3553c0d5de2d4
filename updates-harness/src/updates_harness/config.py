from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from updates_harness.errors import ConfigError

CI_TIMEOUT_BIAS = 10

# env var -> settings field
_ENV_FIELDS: Dict[str, str] = {
    "UPDATES_HOST": "updates_host",
    "UPDATES_PORT": "updates_port",
    "ARTIFACTS_DEST": "artifacts_dest",
    "CI": "ci",
    "UPDATES_PLATFORM": "platform",
    "TEST_PROJECT_ROOT": "project_root",
    "UPDATES_BINARY_PATH": "binary_path",
    "UPDATES_PRIVATE_KEY_PATH": "private_key_path",
    "UPDATES_KEY_ID": "key_id",
    "ANDROID_SERIAL": "android_serial",
    "UPDATES_TIME_SCALE": "time_scale",
}


class HarnessSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    updates_host: str = "localhost"
    updates_port: int = Field(default=4747, ge=0, le=65535)
    bind_host: str = "0.0.0.0"
    artifacts_dest: Path = Path("artifacts")
    ci: bool = False
    time_scale: float = Field(default=1.0, gt=0)
    platform: Literal["android", "ios"] = "android"

    project_root: Optional[Path] = None
    binary_path: Optional[Path] = None
    private_key_path: Optional[Path] = None
    key_id: str = "main"
    static_dir: Optional[Path] = None

    runtime_version: str = "1.0.0"
    android_package: str = "dev.expo.updatese2e"
    android_activity: str = ".MainActivity"
    android_serial: Optional[str] = None
    ios_bundle_id: str = "dev.expo.updatese2e"
    ios_device: str = "booted"
    update_path: str = "/update"
    report_path: str = "/notify"

    @property
    def timeout_bias(self) -> int:
        return CI_TIMEOUT_BIAS if self.ci else 1

    def scaled_ms(self, ms: float) -> float:
        return float(ms) * self.timeout_bias * self.time_scale

    @property
    def base_url(self) -> str:
        return f"http://{self.updates_host}:{self.updates_port}"

    @property
    def dist_path(self) -> Path:
        if self.project_root is None:
            raise ConfigError("project_root is not configured (TEST_PROJECT_ROOT)")
        return self.project_root / "dist"

    @property
    def resolved_private_key_path(self) -> Path:
        if self.private_key_path is not None:
            return self.private_key_path
        if self.project_root is None:
            raise ConfigError("set private_key_path or project_root to locate the signing key")
        return self.project_root / "keys" / "private-key.pem"

    @property
    def resolved_static_dir(self) -> Path:
        return self.static_dir or (self.artifacts_dest / "static")


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() not in {"", "0", "false", "no", "off"}


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for env_key, field_name in _ENV_FIELDS.items():
        raw = environ.get(env_key)
        if raw is None:
            continue
        if field_name == "ci":
            out[field_name] = _parse_bool(raw)
        elif raw.strip():
            out[field_name] = raw.strip()
    return out


def load_yaml_or_json(path: Path) -> Dict[str, Any]:
    """Load a YAML/JSON settings file; the top level must be a mapping."""

    if not path.exists():
        raise FileNotFoundError(path)

    if path.suffix.lower() in {".yaml", ".yml"}:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    elif path.suffix.lower() == ".json":
        data = json.loads(path.read_text(encoding="utf-8"))
    else:
        raise ConfigError(f"Unsupported settings file extension: {path}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level settings must be an object: {path}")
    return data


def load_settings(
    path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> HarnessSettings:
    """File values, then environment variables, then explicit overrides."""

    data: Dict[str, Any] = {}
    if path is not None:
        data.update(load_yaml_or_json(Path(path)))
    data.update(_env_overrides(os.environ if environ is None else environ))
    data.update({k: v for k, v in (overrides or {}).items() if v is not None})
    try:
        return HarnessSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid harness settings:\n{e}") from e


def settings_from_env(environ: Optional[Mapping[str, str]] = None) -> HarnessSettings:
    return load_settings(None, environ=environ)
