"""Per-server connection state shared by handshake, keepalive and dispatcher."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from loguru import logger

from tobby.config.schema import ServerSettings
from tobby.core.constants import TYPING_TIMEOUT
from tobby.core.errors import NotConnected
from tobby.events import capabilities_changed, connection_state
from tobby.gateway import Bus
from tobby.irc.batches import BatchTracker
from tobby.irc.modes import ISupport
from tobby.irc.parser import Message, build_line
from tobby.irc.reactions import ReactionReconciler
from tobby.irc.timers import TimerGroup
from tobby.irc.typing_tracker import TypingTracker
from tobby.store.buffers import BufferStore
from tobby.store.models import Message as ChatMessage
from tobby.store.models import Member, new_message_id

if TYPE_CHECKING:
    from tobby.irc.handshake import RegistrationHandshake
    from tobby.irc.keepalive import KeepaliveSupervisor
    from tobby.irc.transport import TransportSocket

ReplyCallback = Callable[[Message], None]


class Connection:
    """Identity, credentials, capabilities, lifecycle and timers of one server."""

    def __init__(
        self,
        settings: ServerSettings,
        store: BufferStore,
        bus: Bus,
        *,
        typing_timeout: float = TYPING_TIMEOUT,
    ) -> None:
        self.settings = settings
        self.store = store
        self.bus = bus
        self.nick = settings.nickname
        self.caps: set[str] = set()
        self.caps_frozen = False
        self.state = "disconnected"
        self.registered = False
        self.suppress_reconnect = False
        self.transport: TransportSocket | None = None
        self.handshake: RegistrationHandshake | None = None
        self.keepalive: KeepaliveSupervisor | None = None
        self.timers = TimerGroup(owner=settings.id)
        self.batches = BatchTracker()
        self.isupport = ISupport()
        self.accounts: dict[str, str | None] = {}
        self.reactions = ReactionReconciler(store, settings.id)
        self.typing = TypingTracker(store, bus, self.timers, settings.id, own_nick=self.nick, timeout=typing_timeout)
        self._names: dict[str, list[Member]] = {}
        self._expectations: dict[str, list[ReplyCallback]] = {}

    @property
    def id(self) -> str:
        return self.settings.id

    def __repr__(self) -> str:
        return f"<Connection {self.settings.name} {self.state}>"

    # -- wire ---------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self.transport is not None and self.transport.is_open

    def send(
        self,
        command: str,
        *params: str,
        tags: dict[str, str | None] | None = None,
        trailing: bool = False,
    ) -> None:
        if self.transport is None:
            raise NotConnected()
        self.transport.send(build_line(command, *params, tags=tags, trailing=trailing))

    def send_raw(self, line: str) -> None:
        if self.transport is None:
            raise NotConnected()
        self.transport.send(line)

    # -- identity & capabilities ---------------------------------------------

    def is_self(self, nick: str) -> bool:
        return bool(nick) and nick.lower() == self.nick.lower()

    def set_nick(self, nick: str) -> None:
        self.nick = nick
        self.typing.own_nick = nick
        self.store.update_server(self.id, nickname=nick)

    def has_cap(self, cap: str) -> bool:
        return cap in self.caps

    def merge_caps(self, granted: list[str]) -> None:
        if self.caps_frozen:
            logger.debug("Ignoring capability change after registration on {}: {}", self.settings.name, granted)
            return
        added: list[str] = []
        removed: list[str] = []
        for cap in granted:
            if cap.startswith("-"):
                name = cap[1:]
                if name in self.caps:
                    self.caps.discard(name)
                    removed.append(name)
            elif cap not in self.caps:
                self.caps.add(cap)
                added.append(cap)
        if added or removed:
            self.store.update_server(self.id, capabilities=sorted(self.caps))
            _, evt = capabilities_changed(self.id, list(self.caps), added=added, removed=removed)
            self.bus.publish("irc", evt)

    def set_account(self, nick: str, account: str | None) -> None:
        """Record a nick's account; ``*`` or empty means logged out."""
        value = None if account in (None, "", "*") else account
        self.accounts[nick.lower()] = value
        server = self.store.get_server(self.id)
        if server is None:
            return
        for channel in server.channels:
            member = channel.get_member(nick)
            if member is not None and member.account != value:
                member.account = value

    def account_of(self, nick: str) -> str | None:
        return self.accounts.get(nick.lower())

    # -- lifecycle ----------------------------------------------------------

    def set_state(self, state: str, reason: str | None = None) -> None:
        previous = self.state
        if previous == state:
            return
        self.state = state
        self.store.update_server(self.id, connection_state=state)
        _, evt = connection_state(self.id, state, previous=previous, reason=reason)
        self.bus.publish("irc", evt)
        logger.info("{} {} -> {}", self.settings.name, previous, state)

    def reset_session(self) -> None:
        """Drop per-session protocol state ahead of a new transport."""
        self.registered = False
        self.caps = set()
        self.caps_frozen = False
        self.batches.clear()
        self.reactions.clear()
        self.isupport = ISupport()
        self._names.clear()
        self._expectations.clear()

    # -- buffers ------------------------------------------------------------

    def system_message(self, text: str, buffer_id: str | None = None) -> ChatMessage:
        message = ChatMessage(id=new_message_id(), type="system", sender="*", content=text)
        self.store.append_message(self.id, buffer_id or self.id, message)
        return message

    def names_begin(self, channel: str) -> list[Member]:
        return self._names.setdefault(channel.lower(), [])

    def names_end(self, channel: str) -> list[Member] | None:
        return self._names.pop(channel.lower(), None)

    # -- expected replies ---------------------------------------------------

    def expect(self, numeric: str, callback: ReplyCallback) -> None:
        """Route the next ``numeric`` reply to callback instead of the default handling."""
        self._expectations.setdefault(numeric, []).append(callback)

    def take_expectation(self, numeric: str) -> ReplyCallback | None:
        callbacks = self._expectations.get(numeric)
        if not callbacks:
            return None
        callback = callbacks.pop(0)
        if not callbacks:
            del self._expectations[numeric]
        return callback
