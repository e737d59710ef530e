"""
DAGSTORE INFRASTRUCTURE - Observability around the Dag

This package contains infrastructure components:
- event_bus: Pub/sub notifications for Dag mutations
- logger: Mutation recording (ring buffer + optional JSONL files)
"""

from infrastructure.event_bus import (
    DagEvent,
    EventBus,
    EventType,
    get_event_bus,
    reset_event_bus,
)
from infrastructure.logger import (
    EventBuffer,
    LoggerConfig,
    MutationEvent,
    MutationLogger,
    load_logger_config,
)

__all__ = [
    "DagEvent",
    "EventBus",
    "EventType",
    "get_event_bus",
    "reset_event_bus",
    "EventBuffer",
    "LoggerConfig",
    "MutationEvent",
    "MutationLogger",
    "load_logger_config",
]
