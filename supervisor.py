"""
Home Bridge - Gateway Supervisor
Keeps one platform connection alive with exponential-backoff reconnects.
"""

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional

import logger as log
from constants import (
    RECONNECT_BACKOFF_FACTOR, RECONNECT_INITIAL_DELAY, RECONNECT_MAX_DELAY, RECONNECT_MAX_RETRIES,
)
from prometheus_metrics import metrics_manager


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAULTED = "faulted"
    STOPPED = "stopped"


class GatewaySupervisor:
    """Runs `connect(supervisor)` until shutdown, retrying failed attempts.

    `connect` opens the platform stream and returns when it ends cleanly or
    raises on a fault. The platform calls `notify_event()` for every event it
    receives; the first one after a (re)connect marks the connection healthy
    and resets the backoff.
    """

    def __init__(self, name: str, connect: Callable[["GatewaySupervisor"], Awaitable[None]],
                 max_retries: int = RECONNECT_MAX_RETRIES, initial_delay: float = RECONNECT_INITIAL_DELAY,
                 backoff_factor: float = RECONNECT_BACKOFF_FACTOR, max_delay: float = RECONNECT_MAX_DELAY,
                 shutdown: asyncio.Event = None,
                 on_state_change: Callable[[ConnectionState], None] = None):
        self.name = name
        self._connect = connect
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay
        self.shutdown = shutdown or asyncio.Event()
        self.on_state_change = on_state_change

        self.state = ConnectionState.DISCONNECTED
        self.retries = 0
        self.attempts = 0
        self.delay = initial_delay
        self.last_error: Optional[BaseException] = None
        self._healthy = False
        self._set_state(ConnectionState.DISCONNECTED)

    def _set_state(self, state: ConnectionState):
        self.state = state
        metrics_manager.update_gateway_state(self.name, state.value, [s.value for s in ConnectionState])
        if self.on_state_change:
            self.on_state_change(state)

    def notify_event(self):
        """Called by the platform for each received event."""
        if self._healthy:
            return
        self._healthy = True
        self.retries = 0
        self.delay = self.initial_delay
        self._set_state(ConnectionState.CONNECTED)
        log.online("Connected", self.name)

    def stop(self):
        """Request shutdown; `run()` unwinds and never retries."""
        self.shutdown.set()

    async def _attempt(self):
        """Run one connect attempt, cancelling it if shutdown is requested."""
        connect_task = asyncio.create_task(self._connect(self))
        shutdown_task = asyncio.create_task(self.shutdown.wait())
        try:
            done, _ = await asyncio.wait({connect_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            connect_task.cancel()
            shutdown_task.cancel()
            raise
        shutdown_task.cancel()

        if connect_task not in done:
            connect_task.cancel()
            try:
                await connect_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                log.debug(f"Connection raised while shutting down: {e}", self.name)
            return

        # Propagates the fault of the attempt, if any
        connect_task.result()

    async def _backoff(self) -> bool:
        """Sleep the current delay. False if shutdown arrived meanwhile."""
        log.warn(f"Reconnecting in {self.delay:.1f}s (retry {self.retries + 1}/{self.max_retries})", self.name)
        try:
            await asyncio.wait_for(self.shutdown.wait(), timeout=self.delay)
            return False
        except asyncio.TimeoutError:
            return True

    async def run(self):
        """Supervise until shutdown or until retries are exhausted."""
        try:
            while not self.shutdown.is_set():
                self._healthy = False
                self.attempts += 1
                self._set_state(ConnectionState.CONNECTING)
                log.info(f"Connecting (attempt {self.attempts})", self.name)

                try:
                    await self._attempt()
                    if self.shutdown.is_set():
                        break
                    log.warn("Event stream ended", self.name)
                    self._set_state(ConnectionState.DISCONNECTED)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.last_error = e
                    log.exception("Gateway fault", e, self.name)
                    metrics_manager.record_error(self.name, type(e).__name__)
                    self._set_state(ConnectionState.FAULTED)

                if self.shutdown.is_set():
                    break
                if self.retries >= self.max_retries:
                    log.error(f"Giving up after {self.attempts} attempts", self.name)
                    break
                if not await self._backoff():
                    break

                self.retries += 1
                self.delay = min(self.delay * self.backoff_factor, self.max_delay)
                metrics_manager.record_reconnect(self.name)
        finally:
            self._set_state(ConnectionState.STOPPED)
            log.offline("Stopped", self.name)
