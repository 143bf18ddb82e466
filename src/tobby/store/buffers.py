"""In-memory buffer store. Every mutation is published on the bus."""

from __future__ import annotations

from typing import Any

from loguru import logger

from tobby.events import (
    buffer_created,
    buffer_removed,
    buffer_updated,
    buffers_cleared,
    message_added,
    message_updated,
)
from tobby.gateway import Bus
from tobby.store.models import (
    Channel,
    Message,
    PrivateChat,
    Server,
    _Buffer,
    channel_id_for,
    private_chat_id_for,
)

_SOURCE = "store"


class BufferStore:
    """Servers and their buffers, plus the viewer's current focus."""

    def __init__(self, bus: Bus) -> None:
        self._bus = bus
        self._servers: dict[str, Server] = {}
        self.current_server_id: str | None = None
        self.current_buffer_id: str | None = None

    # -- servers ------------------------------------------------------------

    @property
    def servers(self) -> list[Server]:
        return list(self._servers.values())

    def add_server(self, server_id: str, name: str, host: str, port: int, nickname: str) -> Server:
        server = self._servers.get(server_id)
        if server is None:
            server = Server(id=server_id, server_id=server_id, name=name, host=host, port=port, nickname=nickname)
            self._servers[server_id] = server
        return server

    def get_server(self, server_id: str) -> Server | None:
        return self._servers.get(server_id)

    def remove_server(self, server_id: str) -> None:
        if self._servers.pop(server_id, None) is not None and self.current_server_id == server_id:
            self.current_server_id = None
            self.current_buffer_id = None

    def update_server(self, server_id: str, **changes: Any) -> None:
        server = self._servers.get(server_id)
        if server is None:
            return
        self._apply(server, changes)

    # -- buffers ------------------------------------------------------------

    def get_buffer(self, server_id: str, buffer_id: str) -> _Buffer | None:
        server = self._servers.get(server_id)
        if server is None:
            return None
        for buf in server.buffers():
            if buf.id == buffer_id:
                return buf
        return None

    def ensure_channel(self, server_id: str, name: str) -> Channel | None:
        server = self._servers.get(server_id)
        if server is None:
            return None
        channel = server.get_channel(name)
        if channel is None:
            channel = Channel(id=channel_id_for(server_id, name), server_id=server_id, name=name)
            server.channels.append(channel)
            _, evt = buffer_created(server_id, channel.id, "channel", name)
            self._bus.publish(_SOURCE, evt)
        return channel

    def remove_channel(self, server_id: str, channel_id: str) -> None:
        server = self._servers.get(server_id)
        if server is None:
            return
        server.channels = [c for c in server.channels if c.id != channel_id]
        if self.current_buffer_id == channel_id:
            self.current_buffer_id = server_id
        _, evt = buffer_removed(server_id, channel_id)
        self._bus.publish(_SOURCE, evt)

    def ensure_private_chat(self, server_id: str, nickname: str) -> PrivateChat | None:
        server = self._servers.get(server_id)
        if server is None:
            return None
        chat = server.get_private_chat(nickname)
        if chat is None:
            chat = PrivateChat(id=private_chat_id_for(server_id, nickname), server_id=server_id, username=nickname)
            server.private_chats.append(chat)
            _, evt = buffer_created(server_id, chat.id, "private", nickname)
            self._bus.publish(_SOURCE, evt)
        return chat

    def update_buffer(self, server_id: str, buffer_id: str, **changes: Any) -> None:
        buf = self.get_buffer(server_id, buffer_id)
        if buf is None:
            logger.debug("update_buffer: no buffer {} on {}", buffer_id, server_id)
            return
        self._apply(buf, changes)

    def _apply(self, buf: _Buffer, changes: dict[str, Any]) -> None:
        for key, value in changes.items():
            setattr(buf, key, value)
        _, evt = buffer_updated(buf.server_id, buf.id, **changes)
        self._bus.publish(_SOURCE, evt)

    def clear_server(self, server_id: str) -> None:
        """Empty every buffer of a server; channels stay listed but are no longer joined."""
        server = self._servers.get(server_id)
        if server is None:
            return
        for buf in server.buffers():
            buf.messages.clear()
            buf.typing.clear()
            buf.unread_count = 0
            buf.is_mentioned = False
        for channel in server.channels:
            channel.members.clear()
            channel.joined = False
        _, evt = buffers_cleared(server_id)
        self._bus.publish(_SOURCE, evt)

    # -- focus --------------------------------------------------------------

    def focus(self, server_id: str, buffer_id: str | None = None) -> None:
        """Make a buffer the current one and reset its unread and mention state."""
        buffer_id = buffer_id or server_id
        buf = self.get_buffer(server_id, buffer_id)
        if buf is None:
            return
        self.current_server_id = server_id
        self.current_buffer_id = buffer_id
        if buf.unread_count or buf.is_mentioned:
            self._apply(buf, {"unread_count": 0, "is_mentioned": False})

    def is_focused(self, buffer_id: str) -> bool:
        return self.current_buffer_id == buffer_id

    # -- messages -----------------------------------------------------------

    def append_message(self, server_id: str, buffer_id: str, message: Message, *, replayed: bool = False) -> bool:
        buf = self.get_buffer(server_id, buffer_id)
        if buf is None:
            logger.debug("append_message: no buffer {} on {}", buffer_id, server_id)
            return False
        buf.messages.append(message)
        _, evt = message_added(server_id, buffer_id, message, replayed=replayed)
        self._bus.publish(_SOURCE, evt)
        return True

    def find_message(self, server_id: str, buffer_id: str, msgid: str) -> Message | None:
        buf = self.get_buffer(server_id, buffer_id)
        if buf is None:
            return None
        for message in reversed(buf.messages):
            if message.msgid == msgid:
                return message
        return None

    def find_message_anywhere(self, server_id: str, msgid: str) -> tuple[_Buffer, Message] | None:
        server = self._servers.get(server_id)
        if server is None:
            return None
        for buf in server.buffers():
            for message in reversed(buf.messages):
                if message.msgid == msgid:
                    return buf, message
        return None

    def update_message(self, server_id: str, buffer_id: str, message: Message) -> None:
        _, evt = message_updated(server_id, buffer_id, message)
        self._bus.publish(_SOURCE, evt)
