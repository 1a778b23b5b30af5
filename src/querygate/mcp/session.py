"""Peer liveness tracking and bounded transport recovery."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from querygate.errors import TransportError, problem

log = logging.getLogger(__name__)

INITIALIZE_METHODS = frozenset({"initialize", "initialized", "notifications/initialized"})
HEARTBEAT_METHOD = "server/heartbeat"


@dataclass
class ConnectionState:
    """Liveness record for the single peer connection of this process."""

    connected: bool = False
    last_heartbeat: float = 0.0
    reconnect_attempts: int = 0
    shutting_down: bool = False


class Reattachable(Protocol):
    """Transport surface the monitor needs for recovery."""

    async def reattach(self) -> None:
        """Re-arm message handling."""
        ...


ShutdownHook = Callable[[str], Awaitable[None]]


class SessionMonitor:
    """
    Watch heartbeats and re-arm the transport after faults.

    Recovery is a bounded retry with a fixed delay: each fault spends one
    attempt, a successful re-arm resets the counter, and running out of
    attempts escalates to shutdown.
    """

    def __init__(  # noqa: PLR0913
        self,
        state: ConnectionState,
        transport: Reattachable,
        on_exhausted: ShutdownHook,
        *,
        interval: float = 5.0,
        max_attempts: int = 5,
        delay: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.state = state
        self.transport = transport
        self.on_exhausted = on_exhausted
        self.interval = interval
        self.max_attempts = max_attempts
        self.delay = delay
        self.clock = clock
        self._recovering = False

    @property
    def recovering(self) -> bool:
        """Whether a recovery attempt is in progress."""
        return self._recovering

    def observe(self, method: str | None) -> None:
        """Update liveness from an inbound message's method name."""
        if method in INITIALIZE_METHODS:
            log.debug("Handling %s", method)
            self.state.connected = True
            self.state.last_heartbeat = self.clock()
        elif method == HEARTBEAT_METHOD:
            self.state.last_heartbeat = self.clock()
            log.debug("Heartbeat received")

    def heartbeat_overdue(self) -> bool:
        """
        Report whether the peer has been silent for more than two intervals.

        Returns
        -------
        bool
            True when connected and the last heartbeat is too old.
        """
        if not self.state.connected:
            return False
        return self.clock() - self.state.last_heartbeat > self.interval * 2

    async def check(self) -> bool:
        """
        Run one heartbeat check, recovering when the peer has gone quiet.

        Returns
        -------
        bool
            True when a heartbeat timeout was detected.
        """
        if self.state.shutting_down or self._recovering or not self.heartbeat_overdue():
            return False
        log.debug("No heartbeat received, attempting reconnection")
        await self.recover(
            TransportError(
                problem(
                    code="transport.heartbeat_timeout",
                    title="Heartbeat timeout",
                    detail=f"No heartbeat for more than {self.interval * 2:g}s",
                )
            )
        )
        return True

    async def run(self) -> None:
        """Check heartbeats every interval until cancelled or shutting down."""
        while not self.state.shutting_down:
            await asyncio.sleep(self.interval)
            await self.check()

    async def recover(self, error: TransportError) -> None:
        """
        Spend one reconnect attempt on a transport fault.

        Parameters
        ----------
        error:
            The fault that triggered recovery.
        """
        if self.state.shutting_down or self._recovering:
            return
        log.error("Transport fault: %s", error)
        if self.state.reconnect_attempts >= self.max_attempts:
            log.debug("Max reconnection attempts reached, shutting down")
            await self.on_exhausted("reconnect attempts exhausted")
            return

        exhausted = False
        self._recovering = True
        try:
            self.state.reconnect_attempts += 1
            log.debug(
                "Attempting reconnection (%d/%d)...",
                self.state.reconnect_attempts,
                self.max_attempts,
            )
            await asyncio.sleep(self.delay)
            if self.state.shutting_down:
                return
            try:
                await self.transport.reattach()
            except TransportError as exc:
                log.error("Reconnection failed: %s", exc)
                exhausted = self.state.reconnect_attempts >= self.max_attempts
            else:
                self.state.connected = True
                self.state.reconnect_attempts = 0
                self.state.last_heartbeat = self.clock()
                log.debug("Reconnection successful")
                return
        finally:
            self._recovering = False

        if exhausted:
            log.debug("Max reconnection attempts reached, shutting down")
            await self.on_exhausted("reconnect attempts exhausted")
