"""JSONL event log - append-only record of bus traffic, mints and lifecycle"""

from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


class EventLogger:
    """Append-only JSONL event log.

    Every line carries a monotonic ``sequence`` so events can be ordered even
    when timestamps collide. Writers from the event loop and from worker
    threads (sqlite retries) share one lock.
    """

    output_path: Path
    _sequence: int

    def __init__(self, output_file: str | Path, truncate: bool = True) -> None:
        """Initialize the event logger.

        Args:
            output_file: Path of the JSONL file
            truncate: Clear an existing file (new run) instead of appending
        """
        self.output_path = Path(output_file)
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        if truncate or not self.output_path.exists():
            self.output_path.write_text("")
        self._sequence = 0
        self._lock = threading.Lock()

    @property
    def sequence(self) -> int:
        return self._sequence

    def log(self, event_type: str, data: dict[str, Any]) -> None:
        """Log an event to the JSONL file."""
        with self._lock:
            self._sequence += 1
            event: dict[str, Any] = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "sequence": self._sequence,
                "event_type": event_type,
                **data,
            }
            with open(self.output_path, "a") as f:
                f.write(json.dumps(event, default=str) + "\n")

    def log_message(self, message: dict[str, Any]) -> None:
        """Log one bus message (wire form)."""
        self.log("message_sent", {
            "message_id": message["id"],
            "from": message["from"],
            "to": message["to"],
            "type": message["type"],
            "payload": message["payload"],
        })

    def log_mint(self, device_id: str, owner_id: str, credits: float, start: int, end: int) -> None:
        """Log a successful credit mint."""
        self.log("credits_minted", {
            "device_id": device_id,
            "owner_id": owner_id,
            "credits": credits,
            "window_start": start,
            "window_end": end,
        })

    def read_recent(self, n: int = 50) -> list[dict[str, Any]]:
        """Read the last ``n`` events."""
        if not self.output_path.exists():
            return []
        with open(self.output_path) as f:
            lines = [line for line in f if line.strip()]
        return [json.loads(line) for line in lines[-n:]]
