"""
Session event log for the voice assistant.

Every state transition of a session is emitted as a BusEvent. Events go to
in-process callbacks (tests, status displays) and, when the bus has a
session directory, to an append-only JSONL file, one line per event.

Payloads carry ids, lengths and states only: transcript and answer text is
never written to disk.

Writer atomicity: POSIX O_APPEND guarantees atomic writes under PIPE_BUF (4096 bytes).
Each JSON line + newline stays under that limit.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

# POSIX PIPE_BUF: lines must stay under this for atomic multi-writer appends
_PIPE_BUF = 4096


class EventType(str, Enum):
    """All event types in the bus catalog."""
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    STATUS = "status"
    TRANSCRIPT = "transcript"
    QUERY_SENT = "query_sent"
    CANCEL_SENT = "cancel_sent"
    SUPERSEDED = "superseded"
    PARTIAL = "partial"
    FINAL = "final"
    GENERATION_ERROR = "generation_error"
    CANCELLED = "cancelled"
    SPEAKING_START = "speaking_start"
    SPEAKING_END = "speaking_end"
    BARGE_IN = "barge_in"
    CAPTURE_RESTART = "capture_restart"
    FALLBACK_QUERY = "fallback_query"
    CHANNEL_OPEN = "channel_open"
    CHANNEL_CLOSED = "channel_closed"
    MALFORMED_FRAME = "malformed_frame"
    REQUEST_LOST = "request_lost"
    ERROR = "error"


# Core fields that are not part of the payload
_CORE_FIELDS = ("ts", "src", "type", "rid", "sid")


@dataclass
class BusEvent:
    """A single event on the bus. ``rid`` is the generation request id, if any."""
    ts: float
    src: str
    type: str
    rid: Optional[str]
    sid: str
    payload: dict = field(default_factory=dict)

    def __init__(self, ts: float, src: str, type: str, rid: Optional[str], sid: str, **kwargs):
        self.ts = ts
        self.src = src
        self.type = type.value if isinstance(type, EventType) else type
        self.rid = rid
        self.sid = sid
        self.payload = kwargs

    def to_json_line(self) -> str:
        """Serialize to a single JSON line with trailing newline.

        Truncates payload if the line would exceed PIPE_BUF.
        """
        data = {"ts": self.ts, "src": self.src, "type": self.type,
                "rid": self.rid, "sid": self.sid, **self.payload}
        line = json.dumps(data, separators=(',', ':'), default=str) + "\n"

        if len(line.encode()) > _PIPE_BUF:
            truncated = dict(data)
            for key, val in list(truncated.items()):
                if key in _CORE_FIELDS:
                    continue
                if isinstance(val, str) and len(val) > 200:
                    truncated[key] = val[:200] + "...[truncated]"
            line = json.dumps(truncated, separators=(',', ':'), default=str) + "\n"

            if len(line.encode()) > _PIPE_BUF:
                minimal = {k: data[k] for k in _CORE_FIELDS}
                minimal["_truncated"] = True
                line = json.dumps(minimal, separators=(',', ':'), default=str) + "\n"

        return line

    @classmethod
    def from_json_line(cls, line: str) -> "BusEvent":
        """Deserialize from a JSON line."""
        data = json.loads(line.strip())
        core = {k: data.pop(k) for k in _CORE_FIELDS}
        return cls(**core, **data)


class EventBusWriter:
    """Append-only writer for the bus JSONL file."""

    def __init__(self, bus_path: Path):
        self._bus_path = bus_path
        self._file = None

    def open(self):
        """Open the JSONL file for appending (O_APPEND for atomicity)."""
        self._bus_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._bus_path, "a")

    def write(self, evt: BusEvent):
        if self._file is None:
            self.open()
        self._file.write(evt.to_json_line())
        self._file.flush()

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


class EventBus:
    """In-process callbacks plus an optional JSONL session log.

    Usage:
        bus = EventBus("coordinator", sid, session_dir)   # session_dir=None: callbacks only
        bus.open()
        bus.on("*", my_callback)
        bus.emit(EventType.QUERY_SENT, rid=request_id, chars=42)
        bus.close()
    """

    def __init__(self, src: str, sid: Optional[str] = None, session_dir: Optional[Path] = None):
        self._src = src
        self._sid = sid or time.strftime("%Y%m%d_%H%M%S")
        self._session_dir = Path(session_dir) if session_dir else None
        self._writer: Optional[EventBusWriter] = None
        self._callbacks: dict[str, list[Callable]] = {}  # type -> [callback]

    @property
    def sid(self) -> str:
        return self._sid

    @property
    def bus_path(self) -> Optional[Path]:
        if self._session_dir is None:
            return None
        return self._session_dir / "events.jsonl"

    def open(self):
        """Open the JSONL writer. No-op for a callbacks-only bus."""
        if self.bus_path is None or self._writer is not None:
            return
        self._writer = EventBusWriter(self.bus_path)
        try:
            self._writer.open()
        except OSError as e:
            logger.error("Cannot open event log %s: %s", self.bus_path, e)
            self._writer = None

    def close(self):
        if self._writer:
            self._writer.close()
            self._writer = None

    def on(self, event_type, callback: Callable):
        """Register a callback for an event type, or "*" for all events."""
        key = event_type.value if isinstance(event_type, EventType) else event_type
        self._callbacks.setdefault(key, []).append(callback)

    def off(self, event_type, callback: Callable):
        key = event_type.value if isinstance(event_type, EventType) else event_type
        if callback in self._callbacks.get(key, []):
            self._callbacks[key].remove(callback)

    def _fire_callbacks(self, evt: BusEvent):
        for cb_type in (evt.type, "*"):
            for cb in list(self._callbacks.get(cb_type, [])):
                try:
                    cb(evt)
                except Exception as e:
                    logger.error("Bus callback error for %s: %s", evt.type, e)

    def emit(self, event_type, rid: Optional[str] = None, **payload) -> BusEvent:
        """Write the event to the session log (if open) and fire callbacks."""
        evt = BusEvent(ts=time.time(), src=self._src, type=event_type,
                       rid=rid, sid=self._sid, **payload)
        if self._writer:
            try:
                self._writer.write(evt)
            except OSError as e:
                logger.error("Event log write failed: %s", e)
        self._fire_callbacks(evt)
        return evt

    def read_recent(self, last_n: int = 50, event_type: Optional[str] = None) -> list[BusEvent]:
        """Read recent events back from the JSONL file."""
        path = self.bus_path
        if path is None or not path.exists():
            return []

        events = []
        try:
            with open(path, "r") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        evt = BusEvent.from_json_line(line)
                    except (json.JSONDecodeError, KeyError):
                        continue
                    if event_type and evt.type != event_type:
                        continue
                    events.append(evt)
        except OSError:
            return []

        if last_n:
            events = events[-last_n:]
        return events
