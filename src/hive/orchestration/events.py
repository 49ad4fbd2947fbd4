"""Structured event log for runs"""
import json
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from hive.orchestration.models import utc_timestamp

logger = logging.getLogger(__name__)


@dataclass
class Event:
    """One domain event"""
    event: str
    data: dict[str, Any] = field(default_factory=dict)
    run_id: str | None = None
    ts: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> dict:
        return {"ts": self.ts, "event": self.event, "run_id": self.run_id, "data": self.data}

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        return cls(
            event=data["event"],
            data=data.get("data", {}),
            run_id=data.get("run_id"),
            ts=data.get("ts", ""),
        )


class EventLog:
    """Appends events to a JSON lines file and answers simple queries"""

    FILENAME = "events.jsonl"

    def __init__(self, hive_dir: Path, run_id: str | None = None):
        self.hive_dir = hive_dir
        self.run_id = run_id
        self.path = hive_dir / self.FILENAME
        self._lock = threading.Lock()

    def log(self, event: str, **data: Any) -> Event:
        """Append an event"""
        record = Event(event=event, data=data, run_id=self.run_id)
        with self._lock:
            self.hive_dir.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                json.dump(record.to_dict(), f)
                f.write("\n")
        return record

    def read(self) -> list[Event]:
        """All events, oldest first"""
        if not self.path.exists():
            return []

        events = []
        with open(self.path, "r") as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    events.append(Event.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError) as e:
                    logger.warning("Skipping unreadable event at %s:%d: %s", self.path, lineno, e)
        return events

    def by_type(self, event: str) -> list[Event]:
        return [e for e in self.read() if e.event == event]

    def by_agent(self, agent: str) -> list[Event]:
        return [e for e in self.read() if e.data.get("agent") == agent]

    def by_run(self, run_id: str) -> list[Event]:
        return [e for e in self.read() if e.run_id == run_id]

    def last(self, limit: int = 10) -> list[Event]:
        """Most recent events, newest first"""
        return self.read()[-limit:][::-1]

    def counts(self) -> dict[str, int]:
        """Number of events per type"""
        counts: dict[str, int] = defaultdict(int)
        for e in self.read():
            counts[e.event] += 1
        return dict(counts)
