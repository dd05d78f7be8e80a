# /flowbot/models/conversation.py

import threading
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any, NamedTuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionKey(NamedTuple):
    """Identity of a conversation: one session per (user, chat) pair."""
    user_id: int
    chat_id: int


class SessionState(str, Enum):
    WAITING = "waiting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class HistoryEntry:
    step_id: str
    input: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(eq=False)
class Session:
    """
    Live state of one user's progress through a flow.

    Sessions are shared between the store, the engine and user handlers, so
    every mutable field is guarded by the session's own re-entrant lock.
    The lock is never held across an await.
    """
    user_id: int
    chat_id: int
    flow_id: str
    step_id: str
    ttl: timedelta
    topic_id: int = 0
    state: SessionState = SessionState.WAITING
    data: Dict[str, Any] = field(default_factory=dict)
    history: List[HistoryEntry] = field(default_factory=list)
    keyboard_message_id: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def __post_init__(self):
        if self.expires_at is None:
            self.expires_at = self.created_at + self.ttl

    @property
    def key(self) -> SessionKey:
        return SessionKey(self.user_id, self.chat_id)

    # --- Data ---

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self.data.get(key, default)

    def set(self, key: str, value: Any):
        with self._lock:
            self.data[key] = value
            self.updated_at = utcnow()

    def get_string(self, key: str) -> str:
        value = self.get(key)
        return value if isinstance(value, str) else ""

    def get_int(self, key: str) -> int:
        value = self.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0
        return int(value)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self.data)

    # --- Navigation ---

    def set_step(self, step_id: str):
        with self._lock:
            self.step_id = step_id
            self.updated_at = utcnow()

    def set_keyboard_message_id(self, message_id: int):
        with self._lock:
            self.keyboard_message_id = message_id

    def add_history(self, step_id: str, value: str):
        with self._lock:
            self.history.append(HistoryEntry(step_id=step_id, input=value))
            self.updated_at = utcnow()

    def get_previous_step(self) -> str:
        """The step completed before the latest one, or "" with fewer than two entries."""
        with self._lock:
            if len(self.history) < 2:
                return ""
            return self.history[-2].step_id

    def rewind(self) -> str:
        """
        Drops the history from the previous step onwards so that step can be
        answered again, and returns its id ("" when there is nothing to go
        back to). The caller moves the session with the store's change_step.
        """
        with self._lock:
            if len(self.history) < 2:
                return ""
            previous = self.history[-2].step_id
            del self.history[-2:]
            self.updated_at = utcnow()
            return previous

    # --- Lifecycle ---

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        with self._lock:
            return (now or utcnow()) > self.expires_at

    def refresh(self, ttl: Optional[timedelta] = None):
        with self._lock:
            if ttl is not None and ttl > timedelta(0):
                self.ttl = ttl
            self.updated_at = utcnow()
            self.expires_at = self.updated_at + self.ttl

    def mark_processing(self):
        with self._lock:
            self.state = SessionState.PROCESSING

    def mark_waiting(self):
        with self._lock:
            if self.state == SessionState.PROCESSING:
                self.state = SessionState.WAITING

    def complete(self):
        with self._lock:
            self.state = SessionState.COMPLETED

    def cancel(self):
        with self._lock:
            self.state = SessionState.CANCELLED
