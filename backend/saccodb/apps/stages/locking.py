"""
Per-stage mutual exclusion.

Each (domain, stage_id) pair gets its own lock, so admissions at one stage
never wait on another stage and rule/assignment writes never wait on
admissions. Waits are bounded; a timeout surfaces as StageBusy.

Locks are process-local. Running more than one process requires routing
every operation for a stage to the same process.
"""

from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from typing import ContextManager, Dict, Iterator, Optional, Tuple

from .errors import StageBusy

logger = logging.getLogger(__name__)

ADMISSION = "admission"
RULES = "rules"
ASSIGNMENTS = "assignments"

try:
    STAGE_LOCK_TIMEOUT_SECONDS = float(os.getenv("STAGE_LOCK_TIMEOUT_SECONDS", "5"))
except ValueError:
    STAGE_LOCK_TIMEOUT_SECONDS = 5.0


class StageLockRegistry:
    def __init__(self, timeout_seconds: Optional[float] = None) -> None:
        self.timeout_seconds = (
            STAGE_LOCK_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        )
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, domain: str, stage_id: str) -> threading.Lock:
        key = (domain, stage_id)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(
        self,
        domain: str,
        stage_id: str,
        timeout_seconds: Optional[float] = None,
    ) -> Iterator[None]:
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        lock = self._lock_for(domain, stage_id)
        if not lock.acquire(timeout=timeout):
            logger.warning(
                "Stage lock wait timed out",
                extra={"domain": domain, "stage_id": stage_id, "timeout_seconds": timeout},
            )
            raise StageBusy(
                f"Stage {stage_id} is busy, retry shortly",
                retry_after_seconds=max(1, int(round(timeout))),
            )
        try:
            yield
        finally:
            lock.release()

    def admission(self, stage_id: str) -> ContextManager[None]:
        return self.hold(ADMISSION, stage_id)

    def rules(self, stage_id: str) -> ContextManager[None]:
        return self.hold(RULES, stage_id)

    def assignments(self, stage_id: str) -> ContextManager[None]:
        return self.hold(ASSIGNMENTS, stage_id)

    def is_locked(self, domain: str, stage_id: str) -> bool:
        with self._guard:
            lock = self._locks.get((domain, stage_id))
        return bool(lock and lock.locked())
