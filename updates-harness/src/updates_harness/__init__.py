"""updates-harness: end-to-end harness for over-the-air app updates."""

from __future__ import annotations

__version__ = "0.1.0"

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
