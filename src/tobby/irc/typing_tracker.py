"""Who is typing where, with per-user expiry."""

from __future__ import annotations

from loguru import logger

from tobby.core.constants import TYPING_TIMEOUT
from tobby.events import typing_changed
from tobby.gateway import Bus
from tobby.irc.timers import TimerGroup
from tobby.store.buffers import BufferStore


def _timer_name(buffer_id: str, user: str) -> str:
    return f"typing:{buffer_id}:{user.lower()}"


class TypingTracker:
    def __init__(
        self,
        store: BufferStore,
        bus: Bus,
        timers: TimerGroup,
        server_id: str,
        *,
        own_nick: str = "",
        timeout: float = TYPING_TIMEOUT,
    ) -> None:
        self._store = store
        self._bus = bus
        self._timers = timers
        self._server_id = server_id
        self.own_nick = own_nick
        self.timeout = timeout

    def users(self, buffer_id: str) -> list[str]:
        buf = self._store.get_buffer(self._server_id, buffer_id)
        return list(buf.typing) if buf is not None else []

    def set_typing(self, buffer_id: str, user: str) -> None:
        """Mark user as typing and (re)arm their expiry."""
        if self.own_nick and user.lower() == self.own_nick.lower():
            return
        buf = self._store.get_buffer(self._server_id, buffer_id)
        if buf is None:
            return
        self._timers.call_later(
            _timer_name(buffer_id, user),
            self.timeout,
            lambda: self._expire(buffer_id, user),
        )
        if user not in buf.typing:
            buf.typing.append(user)
            self._publish(buffer_id, buf.typing)

    def clear_typing(self, buffer_id: str, user: str) -> None:
        self._timers.cancel(_timer_name(buffer_id, user))
        buf = self._store.get_buffer(self._server_id, buffer_id)
        if buf is None:
            return
        lowered = user.lower()
        remaining = [u for u in buf.typing if u.lower() != lowered]
        if len(remaining) != len(buf.typing):
            buf.typing[:] = remaining
            self._publish(buffer_id, buf.typing)

    def rename(self, old: str, new: str) -> None:
        """Carry typing state across a nick change."""
        server = self._store.get_server(self._server_id)
        if server is None:
            return
        for buf in server.buffers():
            if any(u.lower() == old.lower() for u in buf.typing):
                self.clear_typing(buf.id, old)
                self.set_typing(buf.id, new)

    def clear_user(self, user: str) -> None:
        """Drop a user from every buffer (quit)."""
        server = self._store.get_server(self._server_id)
        if server is None:
            return
        for buf in server.buffers():
            self.clear_typing(buf.id, user)

    def clear_buffer(self, buffer_id: str) -> None:
        """Drop everyone typing in one buffer (self-part, buffer closed)."""
        for user in self.users(buffer_id):
            self.clear_typing(buffer_id, user)

    def clear_all(self) -> None:
        """Drop every typing user on the server and cancel their expiry timers."""
        server = self._store.get_server(self._server_id)
        if server is not None:
            for buf in server.buffers():
                if buf.typing:
                    buf.typing.clear()
                    self._publish(buf.id, buf.typing)
        self._timers.cancel_prefix("typing:")

    def _expire(self, buffer_id: str, user: str) -> None:
        logger.debug("Typing expired for {} in {}", user, buffer_id)
        self.clear_typing(buffer_id, user)

    def _publish(self, buffer_id: str, users: list[str]) -> None:
        _, evt = typing_changed(self._server_id, buffer_id, users)
        self._bus.publish("typing", evt)
