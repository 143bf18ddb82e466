"""Session client: owns one Connection per server and the outbound operations."""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import Callable

from cachetools import TTLCache
from loguru import logger

from tobby.config.schema import Config, ServerSettings
from tobby.core.constants import (
    BACKOFF_LADDER,
    HISTORY_LIMIT,
    PING_INTERVAL,
    PONG_TIMEOUT,
    TYPING_SEND_INTERVAL,
    TYPING_TIMEOUT,
    WANTED_CAPS,
)
from tobby.core.errors import NotConnected, TobbyError, UnknownServerError
from tobby.formatting.message_split import split_text
from tobby.gateway import Bus
from tobby.irc.connection import Connection
from tobby.irc.dispatcher import ProtocolDispatcher
from tobby.irc.handshake import RegistrationHandshake
from tobby.irc.keepalive import KeepaliveSupervisor
from tobby.irc.parser import Message
from tobby.irc.transport import ReadyState, TransportSocket
from tobby.store.buffers import BufferStore
from tobby.store.models import Message as ChatMessage
from tobby.store.models import _Buffer, new_message_id
from tobby.storage.database import Persistence


class IRCClient:
    """Connections keyed by server id."""

    def __init__(
        self,
        bus: Bus,
        store: BufferStore,
        *,
        persistence: Persistence | None = None,
        ping_interval: float = PING_INTERVAL,
        pong_timeout: float = PONG_TIMEOUT,
        reconnect_delays: tuple[float, ...] = BACKOFF_LADDER,
        typing_timeout: float = TYPING_TIMEOUT,
        history_limit: int = HISTORY_LIMIT,
        wanted_caps: tuple[str, ...] = WANTED_CAPS,
        transport_factory: Callable[..., TransportSocket] = TransportSocket,
    ) -> None:
        self.bus = bus
        self.store = store
        self.persistence = persistence
        self.ping_interval = ping_interval
        self.pong_timeout = pong_timeout
        self.reconnect_delays = reconnect_delays
        self.typing_timeout = typing_timeout
        self.history_limit = history_limit
        self.wanted_caps = wanted_caps
        self._transport_factory = transport_factory
        self.connections: dict[str, Connection] = {}
        self._dispatchers: dict[str, ProtocolDispatcher] = {}
        # Outgoing "active" typing notifications, debounced per target
        self._typing_sent: TTLCache[tuple[str, str], None] = TTLCache(maxsize=256, ttl=TYPING_SEND_INTERVAL)

    @classmethod
    def from_config(
        cls,
        config: Config,
        bus: Bus,
        store: BufferStore,
        persistence: Persistence | None = None,
    ) -> IRCClient:
        return cls(
            bus,
            store,
            persistence=persistence,
            ping_interval=config.ping_interval,
            pong_timeout=config.pong_timeout,
            reconnect_delays=config.reconnect_delays,
            typing_timeout=config.typing_timeout,
            history_limit=config.history_limit,
            wanted_caps=config.capabilities,
        )

    # -- lookup -------------------------------------------------------------

    def get(self, server_id: str) -> Connection:
        conn = self.connections.get(server_id)
        if conn is None:
            raise UnknownServerError(f"No connection for server {server_id}", code="unknown_server")
        return conn

    def dispatcher(self, server_id: str) -> ProtocolDispatcher:
        self.get(server_id)
        return self._dispatchers[server_id]

    # -- lifecycle ----------------------------------------------------------

    def _build(self, settings: ServerSettings) -> Connection:
        conn = Connection(settings, self.store, self.bus, typing_timeout=self.typing_timeout)
        conn.keepalive = KeepaliveSupervisor(
            conn,
            lambda: self._open(conn),
            ping_interval=self.ping_interval,
            pong_timeout=self.pong_timeout,
            ladder=self.reconnect_delays,
        )
        conn.handshake = RegistrationHandshake(conn, persistence=self.persistence, wanted_caps=self.wanted_caps)
        self._dispatchers[settings.id] = ProtocolDispatcher(conn, history_limit=self.history_limit)
        return conn

    async def connect(self, settings: ServerSettings) -> Connection:
        """Open a connection to a server and start registration."""
        self.store.add_server(settings.id, settings.name, settings.host, settings.port, settings.nickname)
        conn = self.connections.get(settings.id)
        if conn is None:
            conn = self._build(settings)
            self.connections[settings.id] = conn
        elif conn.is_open:
            logger.info("Already connected to {}", settings.name)
            return conn
        else:
            conn.settings = settings
            # Cancel a backoff reconnect still pending from an earlier failure
            if conn.keepalive is not None:
                conn.keepalive.stop()
        conn.suppress_reconnect = False
        conn.set_state("connecting")
        logger.info("Connecting to {} ({})", settings.name, settings.url)
        await self._open(conn)
        return conn

    async def _open(self, conn: Connection) -> None:
        """Replace the connection's transport with a fresh one and open it."""
        old = conn.transport
        conn.transport = None
        if old is not None and old.state is not ReadyState.CLOSED:
            old.close()
        conn.reset_session()
        dispatcher = self._dispatchers[conn.id]
        transport: TransportSocket | None = None

        def on_open() -> None:
            assert conn.handshake is not None
            conn.handshake.start()

        def on_close(cause: BaseException | None) -> None:
            if conn.transport is not transport:
                return
            if conn.handshake is not None:
                conn.handshake.abort()
            if conn.keepalive is not None:
                conn.keepalive.on_transport_closed(cause)

        transport = self._transport_factory(
            conn.settings.url,
            tls_verify=conn.settings.tls_verify,
            on_open=on_open,
            on_line=dispatcher.handle_line,
            on_close=on_close,
        )
        conn.transport = transport
        await transport.open()

    async def wait_registered(self, server_id: str, timeout: float | None = None) -> str:
        """Wait for the welcome numeric; returns the confirmed nickname."""
        conn = self.get(server_id)
        handshake = conn.handshake
        if conn.registered:
            return conn.nick
        if handshake is None or handshake.registered is None:
            raise NotConnected("Registration has not started")
        return await asyncio.wait_for(asyncio.shield(handshake.registered), timeout)

    def disconnect(self, server_id: str, reason: str = "Leaving") -> None:
        """User-initiated disconnect: QUIT, cancel every timer, no reconnect."""
        conn = self.get(server_id)
        conn.suppress_reconnect = True
        if conn.is_open:
            conn.send("QUIT", reason, trailing=True)
        if conn.keepalive is not None:
            conn.keepalive.stop()
        conn.typing.clear_all()
        conn.timers.cancel_all()
        if conn.transport is not None:
            conn.transport.close()
        conn.set_state("disconnected", reason)

    async def reconnect(self, server_id: str) -> None:
        """User-initiated reconnect: drop the current transport and open a new one now."""
        conn = self.get(server_id)
        conn.suppress_reconnect = True
        if conn.keepalive is not None:
            conn.keepalive.stop()
        if conn.transport is not None:
            conn.transport.close()
        conn.suppress_reconnect = False
        conn.set_state("reconnecting")
        await self._open(conn)

    def remove(self, server_id: str) -> None:
        if server_id in self.connections:
            self.disconnect(server_id, "Server removed")
            del self.connections[server_id]
            self._dispatchers.pop(server_id, None)
        self.store.remove_server(server_id)

    def close_all(self, reason: str = "Leaving") -> None:
        for server_id in list(self.connections):
            self.disconnect(server_id, reason)

    # -- outbound -----------------------------------------------------------

    def _target_buffer(self, conn: Connection, target: str) -> _Buffer | None:
        if conn.isupport.is_channel(target):
            return self.store.ensure_channel(conn.id, target)
        return self.store.ensure_private_chat(conn.id, target)

    def _local_echo(self, conn: Connection, target: str, message: ChatMessage) -> None:
        buf = self._target_buffer(conn, target)
        if buf is not None:
            self.store.append_message(conn.id, buf.id, message)

    def _own_message(self, conn: Connection, type_: str, content: str, reply_to: str | None) -> ChatMessage:
        return ChatMessage(
            id=new_message_id(),
            type=type_,
            sender=conn.nick,
            content=content,
            reply_to=reply_to,
            account=conn.account_of(conn.nick),
            is_own=True,
        )

    def send_message(self, server_id: str, target: str, text: str, *, reply_to: str | None = None) -> None:
        """PRIVMSG, split to wire size; a draft/multiline batch when available."""
        conn = self.get(server_id)
        parts = split_text(text)
        if not parts or all(not line for line, _ in parts):
            return
        tags: dict[str, str | None] = {}
        if reply_to and conn.has_cap("message-tags"):
            tags["+draft/reply"] = reply_to

        if len(parts) > 1 and conn.has_cap("draft/multiline") and conn.has_cap("batch"):
            batch_id = f"ml_{secrets.token_hex(6)}"
            conn.send("BATCH", f"+{batch_id}", "draft/multiline", target, tags=tags or None)
            for line, concat in parts:
                line_tags: dict[str, str | None] = {"batch": batch_id}
                if concat:
                    line_tags["draft/multiline-concat"] = None
                conn.send("PRIVMSG", target, line, tags=line_tags, trailing=True)
            conn.send("BATCH", f"-{batch_id}")
            if not conn.has_cap("echo-message"):
                lines: list[str] = []
                for line, concat in parts:
                    if concat and lines:
                        lines[-1] += line
                    else:
                        lines.append(line)
                message = self._own_message(conn, "message", "\n".join(lines), reply_to)
                message.is_multiline = True
                message.lines = lines
                self._local_echo(conn, target, message)
        else:
            first = True
            for line, _ in parts:
                if not line:
                    continue
                conn.send("PRIVMSG", target, line, tags=(tags if first else None) or None, trailing=True)
                if not conn.has_cap("echo-message"):
                    self._local_echo(conn, target, self._own_message(conn, "message", line, reply_to if first else None))
                first = False
        self._typing_sent.pop((server_id, target.lower()), None)

    def send_action(self, server_id: str, target: str, text: str) -> None:
        conn = self.get(server_id)
        conn.send("PRIVMSG", target, f"\x01ACTION {text}\x01", trailing=True)
        if not conn.has_cap("echo-message"):
            self._local_echo(conn, target, self._own_message(conn, "action", text, None))

    def send_notice(self, server_id: str, target: str, text: str) -> None:
        conn = self.get(server_id)
        conn.send("NOTICE", target, text, trailing=True)
        if not conn.has_cap("echo-message"):
            self._local_echo(conn, target, self._own_message(conn, "notice", text, None))

    def _send_reaction(self, server_id: str, target: str, msgid: str, emoji: str, *, removal: bool) -> None:
        conn = self.get(server_id)
        if not conn.has_cap("message-tags"):
            raise TobbyError("Server does not support message tags", code="unsupported")
        key = "+draft/unreact" if removal else "+draft/react"
        conn.send("TAGMSG", target, tags={key: emoji, "+draft/reply": msgid})
        if not conn.has_cap("echo-message"):
            buf = self._target_buffer(conn, target)
            if buf is not None:
                conn.reactions.handle(buf.id, msgid, emoji, conn.nick, removal=removal)

    def react(self, server_id: str, target: str, msgid: str, emoji: str) -> None:
        self._send_reaction(server_id, target, msgid, emoji, removal=False)

    def unreact(self, server_id: str, target: str, msgid: str, emoji: str) -> None:
        self._send_reaction(server_id, target, msgid, emoji, removal=True)

    def send_typing(self, server_id: str, target: str, active: bool = True) -> bool:
        """Send a typing notification. "active" is sent at most once per interval per target."""
        conn = self.get(server_id)
        if not (conn.has_cap("message-tags") or conn.has_cap("draft/typing")):
            return False
        key = (server_id, target.lower())
        if active:
            if key in self._typing_sent:
                return False
            self._typing_sent[key] = None
            conn.send("TAGMSG", target, tags={"+typing": "active"})
        else:
            self._typing_sent.pop(key, None)
            conn.send("TAGMSG", target, tags={"+typing": "done"})
        return True

    def redact(self, server_id: str, target: str, msgid: str, reason: str | None = None) -> None:
        conn = self.get(server_id)
        if not conn.has_cap("draft/message-redaction"):
            raise TobbyError("Server does not support message redaction", code="unsupported")
        if reason:
            conn.send("REDACT", target, msgid, reason, trailing=True)
        else:
            conn.send("REDACT", target, msgid)

    def join(self, server_id: str, channel: str, key: str | None = None, *, remember: bool = True) -> None:
        conn = self.get(server_id)
        if key:
            conn.send("JOIN", channel, key)
        else:
            conn.send("JOIN", channel)
        if remember and self.persistence is not None:
            self.persistence.save_channel(server_id, channel, auto_join=True)

    def part(self, server_id: str, channel: str, reason: str | None = None, *, forget: bool = True) -> None:
        conn = self.get(server_id)
        if reason:
            conn.send("PART", channel, reason, trailing=True)
        else:
            conn.send("PART", channel)
        if forget and self.persistence is not None:
            self.persistence.delete_channel(server_id, channel)

    def change_nick(self, server_id: str, nick: str) -> None:
        self.get(server_id).send("NICK", nick)

    def set_topic(self, server_id: str, channel: str, topic: str) -> None:
        self.get(server_id).send("TOPIC", channel, topic, trailing=True)

    def set_mode(
        self,
        server_id: str,
        target: str,
        modestring: str,
        *args: str,
        on_denied: Callable[[Message], None] | None = None,
    ) -> None:
        """Send MODE; ``on_denied`` receives the 482 reply if we lack channel privileges."""
        conn = self.get(server_id)
        if on_denied is not None:
            conn.expect("482", on_denied)
        conn.send("MODE", target, modestring, *args)

    def send_raw(self, server_id: str, line: str) -> None:
        self.get(server_id).send_raw(line)

    def open_private_chat(self, server_id: str, nickname: str) -> str | None:
        self.get(server_id)
        chat = self.store.ensure_private_chat(server_id, nickname)
        if chat is None:
            return None
        self.store.focus(server_id, chat.id)
        return chat.id

    def focus(self, server_id: str, buffer_id: str | None = None) -> None:
        self.store.focus(server_id, buffer_id)
