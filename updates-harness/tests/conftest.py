from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_src_on_path() -> None:
    repo_root = Path(__file__).resolve().parents[2]
    src = repo_root / "updates-harness" / "src"
    src_str = str(src)
    if src_str not in sys.path:
        sys.path.insert(0, src_str)

    # test fakes (fake update client, fake command runner) live next to this file
    tests_root_str = str(Path(__file__).resolve().parent)
    if tests_root_str not in sys.path:
        sys.path.insert(0, tests_root_str)


_ensure_src_on_path()

from updates_harness.crypto.signing import (  # noqa: E402
    generate_private_key_pem,
    public_key_pem_from_private,
)

FIXTURE_BUNDLE = """\
// exported fixture bundle
var UPDATES_HOST = "127.0.0.1";
fetch("http://" + UPDATES_HOST + "/notify/test", { method: "POST" });
"""


@pytest.fixture(scope="session")
def private_key_pem() -> str:
    return generate_private_key_pem(2048)


@pytest.fixture(scope="session")
def public_key_pem(private_key_pem: str) -> str:
    return public_key_pem_from_private(private_key_pem)


@pytest.fixture
def private_key_path(tmp_path: Path, private_key_pem: str) -> Path:
    path = tmp_path / "keys" / "private-key.pem"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(private_key_pem, encoding="utf-8")
    return path


@pytest.fixture
def project_root(tmp_path: Path, private_key_pem: str) -> Path:
    """A minimal exported project: dist bundles plus the signing key."""

    root = tmp_path / "updates-e2e"
    bundles = root / "dist" / "bundles"
    bundles.mkdir(parents=True)
    (bundles / "android-0123456789abcdef.js").write_text(FIXTURE_BUNDLE, encoding="utf-8")
    (bundles / "ios-fedcba9876543210.js").write_text(FIXTURE_BUNDLE, encoding="utf-8")
    keys = root / "keys"
    keys.mkdir()
    (keys / "private-key.pem").write_text(private_key_pem, encoding="utf-8")
    return root
