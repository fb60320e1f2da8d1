"""Operational statistics for the gateway.

Lightweight in-memory counters and a snapshot endpoint.

Notes
-----
- Counters reset on process restart.
- Counters never include ids, keys or signatures.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    # Signed requests
    verifications_total: int = 0
    verifications_by_result: Dict[str, int] = field(default_factory=dict)
    verifications_by_role: Dict[str, int] = field(default_factory=dict)

    # Requests
    requests_by_endpoint: Dict[str, int] = field(default_factory=dict)
    rejected_total: int = 0
    rejected_by_code: Dict[str, int] = field(default_factory=dict)

    # Key registry changes
    keyset_uploads_total: int = 0


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_verification(self, result: str, role: str) -> None:
        with self._lock:
            self._c.verifications_total += 1
            self._inc_map(self._c.verifications_by_result, result or "unknown")
            self._inc_map(self._c.verifications_by_role, role or "none")

    def record_request(self, endpoint: str) -> None:
        with self._lock:
            self._inc_map(self._c.requests_by_endpoint, endpoint or "unknown")

    def record_rejection(self, code: str) -> None:
        with self._lock:
            self._c.rejected_total += 1
            self._inc_map(self._c.rejected_by_code, code or "unknown")

    def record_keyset_upload(self) -> None:
        with self._lock:
            self._c.keyset_uploads_total += 1

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "verifications_total": c.verifications_total,
                "verifications_by_result": dict(c.verifications_by_result),
                "verifications_by_role": dict(c.verifications_by_role),
                "requests_by_endpoint": dict(c.requests_by_endpoint),
                "rejected_total": c.rejected_total,
                "rejected_by_code": dict(c.rejected_by_code),
                "keyset_uploads_total": c.keyset_uploads_total,
            }
        if extra:
            snap.update(extra)
        return snap


OPS_STATS = OpsStats()
