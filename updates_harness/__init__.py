"""Import shim for the src/ layout.

The real package lives under `updates-harness/src/updates_harness/`. This lets
`python -m updates_harness.cli.main ...` work from the repo root without
setting PYTHONPATH or installing the project.
"""

from __future__ import annotations

from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
_REAL_PKG = _REPO_ROOT / "updates-harness" / "src" / "updates_harness"
if _REAL_PKG.is_dir():
    __path__.append(str(_REAL_PKG))  # type: ignore[name-defined]

__all__ = [
    "build",
    "cli",
    "config",
    "crypto",
    "errors",
    "lifecycle",
    "manifest",
    "orchestrator",
    "scenarios",
    "server",
    "structured_headers",
]
