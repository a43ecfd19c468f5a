from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any, TextIO

_MAX_PREVIEW_CHARS = 10_000


def _truncate(value: Any) -> Any:
    if isinstance(value, str) and len(value) > _MAX_PREVIEW_CHARS:
        return value[:_MAX_PREVIEW_CHARS] + "...[truncated]"
    if isinstance(value, dict):
        return {key: _truncate(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_truncate(item) for item in value]
    return value


class CommunicationLog:
    """Append-only JSONL record of what was exchanged with callers.

    Writes happen on a background thread; when the queue is full records are
    dropped and counted. The file is rotated to ``<path>.<timestamp>`` once it
    grows past ``max_bytes``.
    """

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_bytes: int = 10 * 1024 * 1024,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self.max_bytes = max(1, int(max_bytes))
        self._lock = Lock()
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        self._dropped_records = 0
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max_queue_size)
            self._worker = Thread(
                target=self._drain_queue, name="pseudollama-audit-writer", daemon=True
            )
            self._worker.start()

    def log(self, event: dict[str, Any]) -> None:
        if not self.enabled:
            return

        record = {"ts": int(time.time()), **_truncate(event)}
        line = json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
        queue = self._queue
        if queue is None:
            return
        try:
            queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped_records += 1

    def request(
        self, request_id: str, endpoint: str, model: str, body: Any
    ) -> None:
        self.log(
            {
                "event": "request",
                "request_id": request_id,
                "endpoint": endpoint,
                "model": model,
                "data": body,
            }
        )

    def response(
        self,
        request_id: str,
        endpoint: str,
        model: str,
        body: Any,
        *,
        status: int = 200,
        backend: str | None = None,
    ) -> None:
        self.log(
            {
                "event": "response",
                "request_id": request_id,
                "endpoint": endpoint,
                "model": model,
                "status": status,
                "backend": backend,
                "data": body,
            }
        )

    def stream_start(
        self, request_id: str, endpoint: str, model: str, backend: str
    ) -> None:
        self.log(
            {
                "event": "stream_start",
                "request_id": request_id,
                "endpoint": endpoint,
                "model": model,
                "backend": backend,
            }
        )

    def stream_chunk(self, request_id: str, delta_text: str) -> None:
        self.log({"event": "stream_chunk", "request_id": request_id, "delta": delta_text})

    def stream_end(
        self,
        request_id: str,
        endpoint: str,
        model: str,
        *,
        state: str,
        deltas: int,
        error: str | None = None,
    ) -> None:
        self.log(
            {
                "event": "stream_end",
                "request_id": request_id,
                "endpoint": endpoint,
                "model": model,
                "state": state,
                "deltas": deltas,
                "error": error,
            }
        )

    def close(self) -> None:
        if not self.enabled:
            return None
        queue = self._queue
        worker = self._worker
        if queue is None or worker is None:
            return None
        queue.put(None)
        worker.join(timeout=2.0)
        return None

    def _rotate_if_needed(self, handle: TextIO) -> TextIO:
        if handle.tell() <= self.max_bytes:
            return handle
        handle.close()
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        self.path.rename(self.path.with_name(f"{self.path.name}.{stamp}"))
        return self.path.open("a", encoding="utf-8")

    def _drain_queue(self) -> None:
        queue = self._queue
        if queue is None:
            return
        handle = self._rotate_if_needed(self.path.open("a", encoding="utf-8"))
        try:
            while True:
                item = queue.get()
                if item is None:
                    queue.task_done()
                    break
                handle.write(item + "\n")
                handle.flush()
                handle = self._rotate_if_needed(handle)
                queue.task_done()
            dropped = 0
            with self._lock:
                dropped = self._dropped_records
                self._dropped_records = 0
            if dropped > 0:
                dropped_record = {
                    "ts": int(time.time()),
                    "event": "audit_log_dropped_records",
                    "dropped_count": dropped,
                }
                handle.write(
                    json.dumps(dropped_record, ensure_ascii=True, separators=(",", ":"))
                    + "\n"
                )
                handle.flush()
        finally:
            handle.close()
