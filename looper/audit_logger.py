import json
import os
import threading
from typing import List

from looper.event_bus import EventBus, LooperEvent


class AuditLogger:
    """
    Audit Logger that subscribes to an Event Bus and writes events
    to an append-only JSONL file in batches.
    """

    def __init__(self, file_path: str, event_bus: EventBus, batch_size: int = 10):
        self.file_path = file_path
        self.batch_size = batch_size
        self._buffer: List[str] = []
        self._lock = threading.Lock()

        os.makedirs(os.path.dirname(os.path.abspath(self.file_path)), exist_ok=True)
        event_bus.subscribe(self.log_event)

    def log_event(self, event: LooperEvent) -> None:
        """Buffer an event; flush once the batch is full."""
        with self._lock:
            self._buffer.append(json.dumps(event.model_dump(mode="json")) + "\n")
            full = len(self._buffer) >= self.batch_size
        if full:
            self.flush()

    def flush(self) -> None:
        with self._lock:
            if not self._buffer:
                return
            lines, self._buffer = self._buffer, []
        with open(self.file_path, "a", encoding="utf-8") as f:
            f.writelines(lines)

    def close(self) -> None:
        self.flush()
