"""Session lifecycle, progress tracking and durable session stores."""

from .events import EventBus, SessionEvent, SessionEventType
from .manager import SessionManager
from .progress import Milestone, ProgressSnapshot, ProgressTracker
from .state import TRANSITIONS, Session, SessionConfig, SessionErrorEntry, can_transition
from .store import (
    InMemorySessionStore,
    JSONFileSessionStore,
    SessionStore,
    SQLiteSessionStore,
    cleanup_old_sessions,
    export_sessions,
    import_sessions,
)

__all__ = [
    # State
    "Session",
    "SessionConfig",
    "SessionErrorEntry",
    "TRANSITIONS",
    "can_transition",
    # Orchestration
    "SessionManager",
    "EventBus",
    "SessionEvent",
    "SessionEventType",
    # Progress
    "ProgressTracker",
    "ProgressSnapshot",
    "Milestone",
    # Stores
    "SessionStore",
    "InMemorySessionStore",
    "JSONFileSessionStore",
    "SQLiteSessionStore",
    "export_sessions",
    "import_sessions",
    "cleanup_old_sessions",
]
