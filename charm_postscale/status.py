from __future__ import annotations

import copy
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Protocol, Tuple

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from .config import (
    STATUS_RETRY_ATTEMPTS,
    STATUS_RETRY_BASE_S,
    STATUS_RETRY_CAP_S,
    STATUS_RETRY_JITTER_S,
)
from .errors import TransientStatusError
from .io import read_json, write_json

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def safe_job_id(job_id: str) -> str:
    """
    Filesystem-safe form of a job id.
    Example: "run 1/slot:2" -> "run_1__slot_2"
    """
    stem = str(job_id).replace("/", "__")
    return "".join(ch if ch.isalnum() or ch in ("_", "-", ".") else "_" for ch in stem)


class StatusSink(Protocol):
    def update(self, job_id: str, fields: Dict[str, Any]) -> None:
        """Merge `fields` into the status document for `job_id` (idempotent)."""
        ...


class MemoryStatusSink:
    """In-process sink; keeps the merged documents plus every update in order."""

    def __init__(self) -> None:
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.history: List[Tuple[str, Dict[str, Any]]] = []

    def update(self, job_id: str, fields: Dict[str, Any]) -> None:
        doc = self.docs.setdefault(job_id, {"created_at": _now_iso()})
        doc.update(copy.deepcopy(fields))
        doc["updated_at"] = _now_iso()
        self.history.append((job_id, copy.deepcopy(fields)))


class JsonFileStatusSink:
    """One JSON document per job under `<root>/jobs/`, merged on every update."""

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    def path_for(self, job_id: str) -> Path:
        return self.root / "jobs" / f"{safe_job_id(job_id)}.json"

    def read(self, job_id: str) -> Dict[str, Any]:
        return read_json(str(self.path_for(job_id)))

    def update(self, job_id: str, fields: Dict[str, Any]) -> None:
        path = self.path_for(job_id)
        doc = read_json(str(path))
        doc.setdefault("job_id", job_id)
        doc.setdefault("created_at", _now_iso())
        doc.update(fields)
        doc["updated_at"] = _now_iso()
        write_json(str(path), doc)


class RetryingStatusSink:
    """
    Wraps a sink with capped exponential backoff + jitter on transient failures.

    Defaults: 8 attempts, 0.25s doubling up to 6s, plus up to 0.25s jitter.
    """

    def __init__(
        self,
        inner: StatusSink,
        attempts: int = STATUS_RETRY_ATTEMPTS,
        retry_on: Tuple[type, ...] = (),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.inner = inner
        self.attempts = int(attempts)
        self.retry_on = tuple(retry_on) or (TransientStatusError, OSError)
        self._sleep = sleep

    def update(self, job_id: str, fields: Dict[str, Any]) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=STATUS_RETRY_BASE_S, max=STATUS_RETRY_CAP_S)
            + wait_random(0, STATUS_RETRY_JITTER_S),
            retry=retry_if_exception_type(self.retry_on),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        retrying(self.inner.update, job_id, fields)
