from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

_SECRET_KEYS = frozenset(
    {"api_key", "access_key", "secret_access_key", "session_token", "authorization"}
)


def redact_secrets(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: "[redacted]" if str(key).lower() in _SECRET_KEYS else redact_secrets(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact_secrets(item) for item in value]
    return value


class JsonlAuditLogger:
    """Appends router events to a JSONL file from a background thread.

    ``log`` never blocks the event loop: when the queue is full the record is
    counted as dropped and a summary line is written at shutdown.
    """

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        self._dropped_records = 0
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max_queue_size)
            self._worker = Thread(
                target=self._write_loop, name="llm-audit-writer", daemon=True
            )
            self._worker.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return self._dropped_records

    def __call__(self, event: dict[str, Any]) -> None:
        self.log(event)

    def log(self, event: dict[str, Any]) -> None:
        queue = self._queue
        if not self.enabled or queue is None:
            return
        line = _encode({"ts": int(time.time()), **redact_secrets(event)})
        try:
            queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped_records += 1

    def close(self) -> None:
        queue = self._queue
        worker = self._worker
        if queue is None or worker is None:
            return
        self._queue = None
        queue.put(None)
        worker.join(timeout=2.0)

    def _write_loop(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while (item := queue.get()) is not None:
                handle.write(item + "\n")
                handle.flush()
            with self._lock:
                dropped, self._dropped_records = self._dropped_records, 0
            if dropped:
                handle.write(
                    _encode(
                        {
                            "ts": int(time.time()),
                            "event": "audit_logger_dropped_records",
                            "dropped_count": dropped,
                        }
                    )
                    + "\n"
                )
                handle.flush()


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
