# /flowbot/services/session_service.py

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Dict, Optional, AsyncIterator

from flowbot.models.conversation import Session, SessionKey, utcnow
from flowbot.workflows.registry import SessionHook, StepChangeHook
from flowbot.utils.metrics import active_sessions_gauge, sessions_ended_counter

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(minutes=30)
DEFAULT_CLEANUP_INTERVAL = 300.0


class SessionStore:
    """
    In-memory index of live conversations, one per (user, chat).

    The index is guarded by a single asyncio lock. Lifecycle hooks are always
    awaited after that lock is released, on the task that caused the event,
    and each removed session fires on_end exactly once.
    """

    def __init__(
        self,
        default_ttl: timedelta = DEFAULT_TTL,
        on_start: Optional[SessionHook] = None,
        on_end: Optional[SessionHook] = None,
        on_step_change: Optional[StepChangeHook] = None,
    ):
        self.default_ttl = default_ttl if default_ttl > timedelta(0) else DEFAULT_TTL
        self.on_start = on_start
        self.on_end = on_end
        self.on_step_change = on_step_change
        self._sessions: Dict[SessionKey, Session] = {}
        self._lock = asyncio.Lock()
        self._key_locks: "weakref.WeakValueDictionary[SessionKey, asyncio.Lock]" = weakref.WeakValueDictionary()

    # --- Hooks ---

    async def _fire_start(self, session: Session):
        if self.on_start is None:
            return
        try:
            await self.on_start(session)
        except Exception as e:
            logger.error(f"session_start_hook_failed for {session.key}: {e}", exc_info=True)

    async def _fire_end(self, session: Session, reason: str):
        sessions_ended_counter.labels(reason=reason).inc()
        if self.on_end is None:
            return
        try:
            await self.on_end(session)
        except Exception as e:
            logger.error(f"session_end_hook_failed for {session.key}: {e}", exc_info=True)

    async def _fire_step_change(self, session: Session, old_step: str, new_step: str):
        if self.on_step_change is None:
            return
        try:
            await self.on_step_change(session, old_step, new_step)
        except Exception as e:
            logger.error(f"session_step_hook_failed for {session.key}: {e}", exc_info=True)

    # --- Operations ---

    async def start(
        self,
        user_id: int,
        chat_id: int,
        topic_id: int,
        flow_id: str,
        initial_step: str,
        ttl: Optional[timedelta] = None,
    ) -> Session:
        """
        Start a conversation, replacing any existing one for the same key.
        The replaced session's on_end hook has finished before the new
        session becomes visible to get().
        """
        if ttl is None or ttl <= timedelta(0):
            ttl = self.default_ttl

        key = SessionKey(user_id, chat_id)
        session = Session(
            user_id=user_id, chat_id=chat_id, topic_id=topic_id,
            flow_id=flow_id, step_id=initial_step, ttl=ttl,
        )

        while True:
            async with self._lock:
                existing = self._sessions.pop(key, None)
                if existing is None:
                    self._sessions[key] = session
                    active_sessions_gauge.set(len(self._sessions))
                    break
            existing.cancel()
            await self._fire_end(existing, reason="replaced")

        logger.info(f"session_started: {key} flow={flow_id} step={initial_step} ttl={ttl}")
        await self._fire_start(session)
        return session

    async def get(self, user_id: int, chat_id: int) -> Optional[Session]:
        """Return the live session, or None. An expired session is ended on the way."""
        key = SessionKey(user_id, chat_id)
        async with self._lock:
            session = self._sessions.get(key)
            if session is None:
                return None
            if not session.is_expired():
                return session
            del self._sessions[key]
            active_sessions_gauge.set(len(self._sessions))

        logger.info(f"session_expired: {key} flow={session.flow_id}")
        await self._fire_end(session, reason="expired")
        return None

    async def end(self, user_id: int, chat_id: int) -> Optional[Session]:
        key = SessionKey(user_id, chat_id)
        async with self._lock:
            session = self._sessions.pop(key, None)
            if session is None:
                return None
            active_sessions_gauge.set(len(self._sessions))

        session.complete()
        logger.info(f"session_ended: {key} flow={session.flow_id}")
        await self._fire_end(session, reason="ended")
        return session

    async def change_step(self, user_id: int, chat_id: int, new_step: str) -> Optional[Session]:
        session = await self.get(user_id, chat_id)
        if session is None:
            return None
        old_step = session.step_id
        session.set_step(new_step)
        logger.debug(f"session_step_changed: {session.key} {old_step} -> {new_step}")
        await self._fire_step_change(session, old_step, new_step)
        return session

    async def cleanup(self) -> int:
        """Remove every expired session and return how many were removed."""
        now = utcnow()
        async with self._lock:
            expired = [key for key, session in self._sessions.items() if session.is_expired(now)]
            removed = [self._sessions.pop(key) for key in expired]
            active_sessions_gauge.set(len(self._sessions))

        for session in removed:
            await self._fire_end(session, reason="expired")
        if removed:
            logger.info(f"session_cleanup_removed: {len(removed)}")
        return len(removed)

    async def count(self) -> int:
        async with self._lock:
            return len(self._sessions)

    async def run_cleanup(self, stop_event: asyncio.Event, interval: float = DEFAULT_CLEANUP_INTERVAL):
        """Sweep expired sessions every `interval` seconds until stop_event is set."""
        logger.info(f"session_cleanup_loop_started: every {interval}s")
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.cleanup()
            except Exception as e:
                logger.error(f"session_cleanup_failed: {e}", exc_info=True)
        logger.info("session_cleanup_loop_stopped")

    @asynccontextmanager
    async def serialize(self, user_id: int, chat_id: int) -> AsyncIterator[None]:
        """Hold the per-(user, chat) lock so one conversation handles one event at a time."""
        key = SessionKey(user_id, chat_id)
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        async with lock:
            yield
