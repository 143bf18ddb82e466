"""Keepalive ping/pong and backoff-scheduled reconnect for one connection."""

from __future__ import annotations

import itertools
import secrets
from collections.abc import Awaitable, Callable
from enum import Enum

from loguru import logger

from tobby.core.constants import BACKOFF_LADDER, PING_INTERVAL, PONG_TIMEOUT
from tobby.irc.connection import Connection
from tobby.irc.parser import Message
from tobby.irc.transport import ReadyState

PING_TIMER = "ping"
PONG_TIMER = "pong-timeout"
RECONNECT_TIMER = "reconnect"


class KeepaliveState(Enum):
    IDLE = "idle"
    ACTIVE = "active"
    AWAITING_PONG = "awaiting_pong"
    DOWN = "down"


def reconnect_delay(attempt: int, ladder: tuple[float, ...] = BACKOFF_LADDER) -> float:
    """Delay before reconnect attempt number ``attempt`` (0-based), clamped at the last rung."""
    return ladder[min(attempt, len(ladder) - 1)]


class KeepaliveSupervisor:
    """Idle -> Active -> AwaitingPong -> {Active | Down}.

    The ping interval and the reconnect timer are never armed together:
    teardown cancels pinging before a reconnect is scheduled, and
    registration cancels the reconnect before pinging starts.
    """

    _tag_counter = itertools.count(1)

    def __init__(
        self,
        conn: Connection,
        reconnect: Callable[[], Awaitable[None]],
        *,
        ping_interval: float = PING_INTERVAL,
        pong_timeout: float = PONG_TIMEOUT,
        ladder: tuple[float, ...] = BACKOFF_LADDER,
    ) -> None:
        self.conn = conn
        self._reconnect = reconnect
        self.ping_interval = ping_interval
        self.pong_timeout = pong_timeout
        self.ladder = ladder
        self.state = KeepaliveState.IDLE
        self.attempt = 0
        self.outstanding: str | None = None

    @property
    def timers(self):
        return self.conn.timers

    def on_registered(self) -> None:
        """Session registered: reset backoff and start pinging."""
        self.attempt = 0
        self.conn.suppress_reconnect = False
        self.timers.cancel(RECONNECT_TIMER)
        self.outstanding = None
        self.timers.call_every(PING_TIMER, self.ping_interval, self._ping)
        self.state = KeepaliveState.ACTIVE

    def _ping(self) -> None:
        if self.state is KeepaliveState.AWAITING_PONG:
            return
        if not self.conn.is_open:
            return
        tag = f"tobby-{next(self._tag_counter)}-{secrets.token_hex(4)}"
        self.outstanding = tag
        self.conn.send("PING", tag, trailing=True)
        self.timers.call_later(PONG_TIMER, self.pong_timeout, self._on_pong_timeout)
        self.state = KeepaliveState.AWAITING_PONG

    def on_pong(self, msg: Message) -> bool:
        """Match a PONG against the outstanding tag. Returns True if it matched."""
        if self.outstanding is None or msg.param(-1) != self.outstanding:
            return False
        self.timers.cancel(PONG_TIMER)
        self.outstanding = None
        if self.state is KeepaliveState.AWAITING_PONG:
            self.state = KeepaliveState.ACTIVE
        return True

    def _on_pong_timeout(self) -> None:
        logger.warning("Ping timeout on {} after {}s", self.conn.settings.name, self.pong_timeout)
        transport = self.conn.transport
        cause = TimeoutError("Ping timeout")
        if transport is not None and transport.state is not ReadyState.CLOSED:
            transport.close(cause)
        else:
            self.on_transport_closed(cause)

    def _teardown(self) -> None:
        self.timers.cancel(PING_TIMER)
        self.timers.cancel(PONG_TIMER)
        self.outstanding = None

    def on_transport_closed(self, cause: BaseException | None) -> None:
        """Transport closed for any reason; reconnect unless the user asked for it."""
        self._teardown()
        self.state = KeepaliveState.DOWN
        reason = str(cause) if cause else "connection closed"
        self.conn.set_state("disconnected", reason)
        if self.conn.suppress_reconnect:
            logger.info("Disconnected from {} ({}), not reconnecting", self.conn.settings.name, reason)
            self.state = KeepaliveState.IDLE
            return
        self.schedule_reconnect(reason)

    def schedule_reconnect(self, reason: str) -> float | None:
        if self.conn.suppress_reconnect:
            return None
        self._teardown()
        delay = reconnect_delay(self.attempt, self.ladder)
        self.attempt += 1
        self.conn.typing.clear_all()
        self.conn.store.clear_server(self.conn.id)
        self.conn.system_message(
            f"Disconnected ({reason}). Reconnecting in {delay:g}s (attempt {self.attempt})..."
        )
        self.conn.set_state("reconnecting", reason)
        logger.info(
            "Reconnecting to {} in {}s (attempt {})",
            self.conn.settings.name,
            delay,
            self.attempt,
        )
        self.timers.call_later(RECONNECT_TIMER, delay, self._attempt_reconnect)
        self.state = KeepaliveState.DOWN
        return delay

    async def _attempt_reconnect(self) -> None:
        if self.conn.suppress_reconnect:
            return
        try:
            await self._reconnect()
        except Exception as exc:
            logger.exception("Reconnect to {} failed: {}", self.conn.settings.name, exc)
            transport = self.conn.transport
            if transport is not None and transport.state is not ReadyState.CLOSED:
                transport.close(exc)
            elif RECONNECT_TIMER not in self.timers:
                self.schedule_reconnect(str(exc))

    def stop(self) -> None:
        """Cancel everything this supervisor armed (explicit disconnect)."""
        self._teardown()
        self.timers.cancel(RECONNECT_TIMER)
        self.state = KeepaliveState.IDLE
