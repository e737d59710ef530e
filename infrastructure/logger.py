"""
DAGSTORE MUTATION LOGGER - The Flight Recorder

Records every Dag mutation published on an EventBus, for playback and
debugging.

Architecture:
- MutationLogger: Core logging interface, subscribes to an EventBus
- EventBuffer: In-memory ring buffer for recent events
- FileLogger: Optional newline-delimited JSON log, rotated daily

Usage:
    bus = EventBus()
    dag = Dag(event_bus=bus)
    recorder = MutationLogger().attach(bus)

    dag.insert_node("a", None)
    for event in recorder.get_recent_events(10):
        print(f"{event.sequence}: {event.mutation_type} {event.node_id}")

Configuration:
    [logger]
    enable_file_log = true
    log_path = "./workspace/logs"
    buffer_size = 10000
"""
import msgspec
import logging
import threading
import tomllib
import warnings
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Callable, List, Optional, Union

from infrastructure.event_bus import DagEvent, EventBus, get_event_bus

logger = logging.getLogger("dagstore.mutation_logger")


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class LoggerConfig:
    """Configuration for the mutation logger."""
    enable_file_log: bool = False       # Enable file-based logging
    log_path: Optional[Path] = None     # Directory for log files
    buffer_size: int = 10000            # In-memory buffer size

    def __post_init__(self):
        if self.log_path is None:
            self.log_path = Path("./workspace/logs")
        else:
            self.log_path = Path(self.log_path)
        if self.buffer_size <= 0:
            raise ValueError(f"buffer_size must be positive, got {self.buffer_size}")


def load_logger_config(path: Union[str, Path]) -> LoggerConfig:
    """
    Load LoggerConfig from the [logger] table of a TOML file.

    A missing file gives the defaults (with a warning). Unknown keys in the
    table are ignored.
    """
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError:
        warnings.warn(f"Logger config not found at {path}, using defaults")
        return LoggerConfig()

    section = data.get("logger", {})
    return LoggerConfig(
        enable_file_log=section.get("enable_file_log", False),
        log_path=section.get("log_path"),
        buffer_size=section.get("buffer_size", 10000),
    )


# =============================================================================
# MUTATION EVENT
# =============================================================================

class MutationEvent(msgspec.Struct, kw_only=True):
    """
    One recorded Dag mutation.

    Identifiers are stored as their str() so events stay serializable
    whatever id type the Dag uses.
    """
    timestamp: str
    sequence: int
    mutation_type: str                  # EventType value
    node_id: Optional[str] = None
    source_id: Optional[str] = None
    target_id: Optional[str] = None
    source: str = "dag"


def _id_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


# =============================================================================
# EVENT BUFFER
# =============================================================================

class EventBuffer:
    """
    Thread-safe ring buffer for recent mutation events.

    Provides O(1) append and O(n) query for filtering.
    """

    def __init__(self, max_size: int = 10000):
        self._buffer: deque[MutationEvent] = deque(maxlen=max_size)
        self._lock = threading.RLock()
        self._sequence = 0

    def append(self, event: MutationEvent) -> None:
        with self._lock:
            self._buffer.append(event)

    def get_since(self, timestamp: str) -> List[MutationEvent]:
        """Get all events at or after an ISO8601 timestamp."""
        with self._lock:
            return [e for e in self._buffer if e.timestamp >= timestamp]

    def get_last(self, n: int) -> List[MutationEvent]:
        """Get the last n events."""
        with self._lock:
            items = list(self._buffer)
            return items[-n:] if n > 0 else []

    def get_by_node(self, node_id: str) -> List[MutationEvent]:
        """Get all events touching a node, as endpoint or subject."""
        with self._lock:
            return [
                e for e in self._buffer
                if node_id in (e.node_id, e.source_id, e.target_id)
            ]

    def get_by_type(self, mutation_type: str) -> List[MutationEvent]:
        with self._lock:
            return [e for e in self._buffer if e.mutation_type == mutation_type]

    def next_sequence(self) -> int:
        with self._lock:
            self._sequence += 1
            return self._sequence

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


# =============================================================================
# FILE LOGGER
# =============================================================================

class FileLogger:
    """
    File-based event logger.

    Writes events as newline-delimited JSON. Rotates logs daily.
    """

    def __init__(self, log_path: Path):
        self._log_path = log_path
        self._current_file: Optional[BinaryIO] = None
        self._current_date: Optional[str] = None
        self._lock = threading.Lock()
        self._encoder = msgspec.json.Encoder()

        log_path.mkdir(parents=True, exist_ok=True)

    def write(self, event: MutationEvent) -> None:
        """Append an event to today's log file."""
        with self._lock:
            self._ensure_file()
            self._current_file.write(self._encoder.encode(event) + b"\n")
            self._current_file.flush()

    def _ensure_file(self) -> None:
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")

        if self._current_date != today:
            if self._current_file:
                self._current_file.close()

            filepath = self._log_path / f"mutations_{today}.jsonl"
            self._current_file = open(filepath, "ab")
            self._current_date = today

    def close(self) -> None:
        with self._lock:
            if self._current_file:
                self._current_file.close()
                self._current_file = None
                self._current_date = None

    def read_log(self, date: str) -> List[MutationEvent]:
        """Read events from a specific date's log (YYYY-MM-DD)."""
        filepath = self._log_path / f"mutations_{date}.jsonl"

        if not filepath.exists():
            return []

        events = []
        decoder = msgspec.json.Decoder(type=MutationEvent)

        with open(filepath, "rb") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(decoder.decode(line))
                except msgspec.DecodeError as e:
                    logger.warning(f"Skipping malformed line {lineno} in {filepath}: {e}")

        return events


# =============================================================================
# MUTATION LOGGER (Main Interface)
# =============================================================================

class MutationLogger:
    """
    Records Dag mutations published on an EventBus.

    Events always go to the in-memory buffer, and to a daily JSONL file when
    `enable_file_log` is set.
    """

    def __init__(self, config: Optional[LoggerConfig] = None):
        self.config = config or LoggerConfig()

        self._buffer = EventBuffer(self.config.buffer_size)
        self._file_logger: Optional[FileLogger] = None
        self._bus: Optional[EventBus] = None

        if self.config.enable_file_log:
            self._file_logger = FileLogger(self.config.log_path)

        self._subscribers: List[Callable[[MutationEvent], None]] = []

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def _emit(self, event: MutationEvent) -> None:
        self._buffer.append(event)

        if self._file_logger:
            self._file_logger.write(event)

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                logger.error(f"Mutation subscriber error: {e}", exc_info=True)

    # =========================================================================
    # BUS WIRING
    # =========================================================================

    def attach(self, bus: Optional[EventBus] = None) -> "MutationLogger":
        """
        Start recording events from `bus` (the global bus when None).

        Returns self, so construction and attachment can be chained.
        """
        self.detach()
        self._bus = bus if bus is not None else get_event_bus()
        self._bus.subscribe_all(self.record)
        logger.debug("Mutation logger attached to event bus")
        return self

    def detach(self) -> None:
        """Stop recording. Safe to call when not attached."""
        if self._bus is not None:
            self._bus.unsubscribe_all(self.record)
            self._bus = None

    def record(self, event: DagEvent) -> MutationEvent:
        """Convert a DagEvent into a MutationEvent and store it."""
        payload = event.payload
        mutation = MutationEvent(
            timestamp=self._now(),
            sequence=self._buffer.next_sequence(),
            mutation_type=event.type.value,
            node_id=_id_str(payload.get("node_id")),
            source_id=_id_str(payload.get("from_id")),
            target_id=_id_str(payload.get("to_id")),
            source=event.source,
        )
        self._emit(mutation)
        return mutation

    def subscribe(self, callback: Callable[[MutationEvent], None]) -> None:
        """Call `callback` with every recorded MutationEvent."""
        self._subscribers.append(callback)

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_recent_events(self, n: int = 100) -> List[MutationEvent]:
        return self._buffer.get_last(n)

    def get_events_for_node(self, node_id: Any) -> List[MutationEvent]:
        return self._buffer.get_by_node(str(node_id))

    def get_events_by_type(self, mutation_type: str) -> List[MutationEvent]:
        return self._buffer.get_by_type(mutation_type)

    def get_events_since(self, timestamp: str) -> List[MutationEvent]:
        return self._buffer.get_since(timestamp)

    def read_log(self, date: str) -> List[MutationEvent]:
        """Read a day's persisted events; empty when file logging is off."""
        if self._file_logger is None:
            return []
        return self._file_logger.read_log(date)

    def __len__(self) -> int:
        return len(self._buffer)

    def clear(self) -> None:
        self._buffer.clear()

    def close(self) -> None:
        """Detach from the bus and close any open log file."""
        self.detach()
        if self._file_logger:
            self._file_logger.close()
