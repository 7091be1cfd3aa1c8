"""
Identifier generation for sessions and tickets.

Ids combine a per-run prefix with a timestamp and a monotonic nonce, so two
requests for the same owner and subject inside the same clock tick still get
distinct ids:

    {kind}:{run_id}:{owner}:{subject}:{ts_ms}:{nonce}
    TKT_{run_id}_{ts}_{nonce}
"""

from __future__ import annotations

import hashlib
import itertools
import time
import uuid
from typing import Callable, Optional


def _new_run_id() -> str:
    return hashlib.md5(f"{time.time()}{uuid.uuid4()}".encode()).hexdigest()[:8]


class IdGenerator:
    """Unique id source for one process run."""

    def __init__(
        self,
        run_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.run_id = run_id or _new_run_id()
        self._clock = clock
        self._nonce = itertools.count(1)

    def next_nonce(self) -> int:
        return next(self._nonce)

    def session_id(self, kind: str, owner: str, subject: str) -> str:
        ts_ms = int(self._clock() * 1000)
        return f"{kind}:{self.run_id}:{owner}:{subject}:{ts_ms}:{self.next_nonce()}"

    def ticket_id(self) -> str:
        return f"TKT_{self.run_id}_{int(self._clock())}_{self.next_nonce()}"
