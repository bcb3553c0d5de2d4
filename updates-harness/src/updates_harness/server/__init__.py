from __future__ import annotations

from updates_harness.server.events import EventLog, RecordedRequest
from updates_harness.server.update_server import SignedManifestEnvelope, UpdateTestServer

__all__ = ["EventLog", "RecordedRequest", "SignedManifestEnvelope", "UpdateTestServer"]
