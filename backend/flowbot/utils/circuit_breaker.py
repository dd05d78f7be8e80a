# /flowbot/utils/circuit_breaker.py

import asyncio
import time
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from flowbot.utils.metrics import circuit_open_gauge

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised instead of calling the wrapped function while the circuit is open."""


class CircuitBreaker:
    """
    Stops calling a failing upstream for `timeout` seconds once
    `failure_threshold` consecutive calls have failed. After the timeout a
    trial (HALF_OPEN) period lets calls through; `success_threshold`
    successes close the circuit again, and any failure reopens it.
    """

    def __init__(self, service_name: str, failure_threshold: int = 5, timeout: int = 60, success_threshold: int = 3):
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: Optional[float] = None
        self.state = CircuitState.CLOSED
        self._lock = asyncio.Lock()
        circuit_open_gauge.labels(service=service_name).set(0)

    def _transition(self, state: CircuitState):
        if state == self.state:
            return
        logger.info(f"circuit_breaker[{self.service_name}]: {self.state.value} -> {state.value}")
        self.state = state
        if state == CircuitState.OPEN:
            self.opened_at = time.monotonic()
        elif state == CircuitState.HALF_OPEN:
            self.success_count = 0
        else:
            self.failure_count = 0
        circuit_open_gauge.labels(service=self.service_name).set(1 if state == CircuitState.OPEN else 0)

    async def _before_call(self):
        async with self._lock:
            if self.state != CircuitState.OPEN:
                return
            if self.opened_at is not None and time.monotonic() - self.opened_at >= self.timeout:
                self._transition(CircuitState.HALF_OPEN)
                return
        logger.warning(f"circuit_breaker[{self.service_name}] is open; call blocked")
        raise CircuitOpenError(f"Circuit breaker is OPEN for {self.service_name}")

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        await self._before_call()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            await self._record(success=False)
            raise
        await self._record(success=True)
        return result

    async def _record(self, success: bool):
        async with self._lock:
            if success:
                if self.state != CircuitState.HALF_OPEN:
                    self.failure_count = 0
                    return
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self._transition(CircuitState.CLOSED)
                return

            self.failure_count += 1
            if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                logger.error(f"circuit_breaker[{self.service_name}] opening after {self.failure_count} failures")
                self._transition(CircuitState.OPEN)
