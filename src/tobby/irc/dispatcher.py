"""Routes decoded protocol lines to handlers that project them onto buffers."""

from __future__ import annotations

import re
from dataclasses import replace
from datetime import datetime, timezone

from loguru import logger

from tobby import __version__
from tobby.core.constants import HISTORY_LIMIT
from tobby.core.errors import ProtocolError
from tobby.events import buffer_updated, error_raised
from tobby.irc.batches import Batch
from tobby.irc.connection import Connection
from tobby.irc.modes import apply_member_modes, iter_mode_changes
from tobby.irc.parser import Message, parse_line
from tobby.store.models import Channel, Member, PrivateChat, Server, _Buffer, new_message_id
from tobby.store.models import Message as ChatMessage

# Numerics from the registration burst that always belong in the server buffer
_SERVER_BUFFER_NUMERICS = frozenset(
    {"002", "003", "004", "042", "250", "251", "252", "253", "254", "255", "265", "266", "372", "375", "376", "396"}
)
_TYPING_TAGS = ("+typing", "+draft/typing")
_NICK_CHARS = r"A-Za-z0-9_\-\[\]\\`^{}|"
_REDACTED_TEXT = "[message deleted]"


def mentions(text: str, nick: str) -> bool:
    """True if nick appears in text as a whole word, ignoring case."""
    if not nick:
        return False
    pattern = rf"(?<![{_NICK_CHARS}]){re.escape(nick)}(?![{_NICK_CHARS}])"
    return re.search(pattern, text, re.IGNORECASE) is not None


class ProtocolDispatcher:
    """One per connection. Handlers are ``on_raw_<command>`` methods."""

    def __init__(self, conn: Connection, *, history_limit: int = HISTORY_LIMIT) -> None:
        self.conn = conn
        self.store = conn.store
        self.history_limit = history_limit

    # -- entry points -------------------------------------------------------

    def handle_line(self, line: str) -> None:
        try:
            msg = parse_line(line)
        except ProtocolError as exc:
            logger.warning("Dropping malformed line from {}: {!r} ({})", self.conn.settings.name, line, exc)
            return
        self.handle(msg)

    def handle(self, msg: Message) -> None:
        try:
            self._route(msg)
        except Exception as exc:
            logger.exception("Handler for {} failed on {}: {}", msg.command, self.conn.settings.name, exc)

    def _route(self, msg: Message) -> None:
        handshake = self.conn.handshake
        if handshake is not None and handshake.handle(msg):
            return
        if msg.command in ("PRIVMSG", "NOTICE"):
            batch = self.conn.batches.collecting(msg)
            if batch is not None:
                batch.messages.append(msg)
                return
        handler = getattr(self, f"on_raw_{msg.command.lower()}", None)
        if handler is not None:
            handler(msg)
        elif msg.command.isdigit():
            self._on_numeric(msg)
        else:
            logger.debug("Unhandled {} on {}", msg.command, self.conn.settings.name)

    # -- helpers ------------------------------------------------------------

    @property
    def server(self) -> Server | None:
        return self.store.get_server(self.conn.id)

    def _is_replay(self, msg: Message) -> bool:
        return self.conn.batches.is_replay(msg)

    def _channel_name(self, target: str) -> str | None:
        """Channel name for a target, tolerating STATUSMSG prefixes like ``@#chan``."""
        isupport = self.conn.isupport
        if isupport.is_channel(target):
            return target
        stripped = target.lstrip(isupport.symbols)
        if isupport.is_channel(stripped):
            return stripped
        return None

    def routed_buffer_id(self) -> str:
        """Focused buffer if it belongs to this connection, else the server buffer."""
        store = self.store
        if store.current_server_id == self.conn.id and store.current_buffer_id:
            if store.get_buffer(self.conn.id, store.current_buffer_id) is not None:
                return store.current_buffer_id
        return self.conn.id

    def _message(self, msg: Message, type_: str, content: str, sender: str | None = None) -> ChatMessage:
        sender = sender if sender is not None else msg.source.name
        return ChatMessage(
            id=new_message_id(),
            type=type_,
            sender=sender,
            content=content,
            timestamp=msg.time,
            msgid=msg.tags.get("msgid"),
            account=msg.tags.get("account") or None,
            is_own=self.conn.is_self(sender),
        )

    def _append(self, buf: _Buffer, message: ChatMessage, *, replay: bool = False) -> None:
        if not self.store.append_message(self.conn.id, buf.id, message, replayed=replay):
            return
        self.conn.reactions.on_message_appended(buf.id, message)

    def _count_unread(self, buf: _Buffer, message: ChatMessage) -> None:
        if message.is_own or self.store.is_focused(buf.id):
            return
        changes: dict[str, object] = {"unread_count": buf.unread_count + 1}
        if message.is_mention:
            changes["is_mentioned"] = True
        self.store.update_buffer(self.conn.id, buf.id, **changes)

    def _members_changed(self, channel: Channel) -> None:
        _, evt = buffer_updated(self.conn.id, channel.id, members=list(channel.members))
        self.conn.bus.publish("irc", evt)

    def _track_account(self, msg: Message) -> None:
        if "account" in msg.tags and msg.source.nick:
            self.conn.set_account(msg.source.nick, msg.tags["account"])

    def _replay_target(self, msg: Message) -> _Buffer | None:
        """Buffer a replayed line without its own target belongs to (the chathistory target)."""
        batch = self.conn.batches.get(msg.batch)
        while batch is not None and not batch.params and batch.parent:
            batch = self.conn.batches.get(batch.parent)
        if batch is None or not batch.params:
            return None
        name = self._channel_name(batch.params[0])
        if name is not None:
            return self.store.ensure_channel(self.conn.id, name)
        return self.store.ensure_private_chat(self.conn.id, batch.params[0])

    # -- connection-level ---------------------------------------------------

    def on_raw_ping(self, msg: Message) -> None:
        self.conn.send("PONG", msg.param(-1), trailing=True)

    def on_raw_pong(self, msg: Message) -> None:
        if self.conn.keepalive is not None:
            self.conn.keepalive.on_pong(msg)

    def on_raw_005(self, msg: Message) -> None:
        # 005 <nick> TOKEN TOKEN ... :are supported by this server
        self.conn.isupport.update(msg.params[1:-1])
        network = self.conn.isupport.network
        server = self.server
        if network and server is not None and server.network != network:
            self.store.update_server(self.conn.id, network=network)

    def on_raw_error(self, msg: Message) -> None:
        text = msg.param(-1, "Closing link")
        logger.warning("Server ERROR on {}: {}", self.conn.settings.name, text)
        self.conn.system_message(f"ERROR: {text}")

    def on_raw_333(self, msg: Message) -> None:
        # 333 <nick> <channel> <setter> <unix time>
        server = self.server
        channel = server.get_channel(msg.param(1)) if server else None
        if channel is None:
            return
        try:
            set_at = datetime.fromtimestamp(int(msg.param(3)), timezone.utc)
        except (ValueError, OverflowError, OSError):
            set_at = None
        setter = msg.param(2).split("!", 1)[0] or None
        self.store.update_buffer(self.conn.id, channel.id, topic_set_by=setter, topic_set_at=set_at)

    # -- membership ---------------------------------------------------------

    def on_raw_join(self, msg: Message) -> None:
        nick = msg.source.nick
        name = msg.param(0)
        if not nick or not name:
            return
        replay = self._is_replay(msg)
        # extended-join: JOIN <channel> <account> :<realname>
        if len(msg.params) >= 2:
            self.conn.set_account(nick, msg.params[1])
        self._track_account(msg)
        channel = self.store.ensure_channel(self.conn.id, name)
        if channel is None:
            return
        if not replay:
            if self.conn.is_self(nick):
                channel.members.clear()
                self.store.update_buffer(self.conn.id, channel.id, joined=True, members=channel.members)
                if self.conn.has_cap("draft/chathistory") and self.history_limit > 0:
                    self.conn.send("CHATHISTORY", "LATEST", channel.name, "*", str(self.history_limit))
            elif channel.get_member(nick) is None:
                channel.members.append(Member(nickname=nick, account=self.conn.account_of(nick)))
                self._members_changed(channel)
        self._append(channel, self._message(msg, "join", f"{nick} has joined {channel.name}"), replay=replay)

    def on_raw_part(self, msg: Message) -> None:
        nick = msg.source.nick
        server = self.server
        if not nick or server is None:
            return
        channel = server.get_channel(msg.param(0))
        if channel is None:
            return
        reason = msg.param(1) if len(msg.params) > 1 else ""
        text = f"{nick} has left {channel.name}" + (f" ({reason})" if reason else "")
        replay = self._is_replay(msg)
        if replay:
            self._append(channel, self._message(msg, "part", text), replay=True)
            return
        if self.conn.is_self(nick):
            self.conn.typing.clear_buffer(channel.id)
            self.store.remove_channel(self.conn.id, channel.id)
            self.conn.system_message(text)
            return
        self.conn.typing.clear_typing(channel.id, nick)
        if channel.remove_member(nick) is not None:
            self._members_changed(channel)
        self._append(channel, self._message(msg, "part", text))

    def on_raw_quit(self, msg: Message) -> None:
        nick = msg.source.nick
        server = self.server
        if not nick or server is None:
            return
        reason = msg.param(0)
        text = f"{nick} has quit" + (f" ({reason})" if reason else "")
        if self._is_replay(msg):
            target = self._replay_target(msg)
            if target is not None:
                self._append(target, self._message(msg, "quit", text), replay=True)
            return
        self.conn.typing.clear_user(nick)
        for channel in server.channels:
            if channel.remove_member(nick) is not None:
                self._members_changed(channel)
                self._append(channel, self._message(msg, "quit", text))
        chat = server.get_private_chat(nick)
        if chat is not None:
            self._append(chat, self._message(msg, "quit", text))

    def on_raw_nick(self, msg: Message) -> None:
        old = msg.source.nick
        new = msg.param(0)
        server = self.server
        if not old or not new or server is None:
            return
        text = f"{old} is now known as {new}"
        if self._is_replay(msg):
            target = self._replay_target(msg)
            if target is not None:
                self._append(target, self._message(msg, "nick", text), replay=True)
            return
        is_self = self.conn.is_self(old)
        if is_self:
            self.conn.set_nick(new)
            self.conn.system_message(text)
        if old.lower() in self.conn.accounts:
            self.conn.accounts[new.lower()] = self.conn.accounts.pop(old.lower())
        self.conn.typing.rename(old, new)
        for channel in server.channels:
            member = channel.get_member(old)
            if member is None:
                continue
            member.nickname = new
            self._members_changed(channel)
            self._append(channel, self._message(msg, "nick", text, sender=old))
        chat = server.get_private_chat(old)
        if chat is not None and not is_self:
            self.store.update_buffer(self.conn.id, chat.id, username=new)
            self._append(chat, self._message(msg, "nick", text, sender=old))

    def on_raw_kick(self, msg: Message) -> None:
        kicker = msg.source.name
        server = self.server
        if server is None:
            return
        channel = server.get_channel(msg.param(0))
        target = msg.param(1)
        if channel is None or not target:
            return
        reason = msg.param(2) if len(msg.params) > 2 else ""
        text = f"{target} was kicked by {kicker}" + (f" ({reason})" if reason else "")
        replay = self._is_replay(msg)
        if not replay:
            if self.conn.is_self(target):
                channel.members.clear()
                self.store.update_buffer(self.conn.id, channel.id, joined=False, members=channel.members)
                for user in list(channel.typing):
                    self.conn.typing.clear_typing(channel.id, user)
            elif channel.remove_member(target) is not None:
                self.conn.typing.clear_typing(channel.id, target)
                self._members_changed(channel)
        self._append(channel, self._message(msg, "kick", text), replay=replay)

    def on_raw_mode(self, msg: Message) -> None:
        target = msg.param(0)
        modestring = msg.param(1)
        args = msg.params[2:]
        sender = msg.source.name
        text = f"{sender} sets mode {modestring}" + (f" {' '.join(args)}" if args else "")
        name = self._channel_name(target)
        if name is None:
            self.conn.system_message(text)
            return
        server = self.server
        channel = server.get_channel(name) if server else None
        if channel is None:
            return
        replay = self._is_replay(msg)
        if not replay:
            changes = iter_mode_changes(modestring, list(args), self.conn.isupport)
            if apply_member_modes(channel, changes, self.conn.isupport):
                self._members_changed(channel)
        self._append(channel, self._message(msg, "mode", text), replay=replay)

    def on_raw_353(self, msg: Message) -> None:
        # 353 <nick> <symbol> <channel> :<names>
        name = msg.param(2)
        pending = self.conn.names_begin(name)
        for entry in msg.param(3).split():
            symbols, nick = self.conn.isupport.split_nick(entry)
            nick = nick.partition("!")[0]
            if not nick:
                continue
            symbols.sort(key=self.conn.isupport.rank)
            pending.append(Member(nickname=nick, account=self.conn.account_of(nick), modes=symbols))

    def on_raw_366(self, msg: Message) -> None:
        name = msg.param(1)
        members = self.conn.names_end(name)
        server = self.server
        channel = server.get_channel(name) if server else None
        if members is None or channel is None:
            return
        channel.members[:] = members
        self._members_changed(channel)

    def on_raw_topic(self, msg: Message) -> None:
        server = self.server
        channel = server.get_channel(msg.param(0)) if server else None
        if channel is None:
            return
        topic = msg.param(1)
        replay = self._is_replay(msg)
        if not replay:
            self.store.update_buffer(
                self.conn.id, channel.id, topic=topic, topic_set_by=msg.source.name, topic_set_at=msg.time
            )
        text = f"{msg.source.name} changed the topic to: {topic}"
        self._append(channel, self._message(msg, "system", text), replay=replay)

    def on_raw_332(self, msg: Message) -> None:
        server = self.server
        channel = server.get_channel(msg.param(1)) if server else None
        if channel is not None:
            self.store.update_buffer(self.conn.id, channel.id, topic=msg.param(2))

    def on_raw_account(self, msg: Message) -> None:
        if msg.source.nick:
            self.conn.set_account(msg.source.nick, msg.param(0))

    def on_raw_away(self, msg: Message) -> None:
        nick = msg.source.nick
        server = self.server
        if not nick or server is None:
            return
        away = bool(msg.params)
        for channel in server.channels:
            member = channel.get_member(nick)
            if member is not None and member.away != away:
                member.away = away
                self._members_changed(channel)

    def on_raw_invite(self, msg: Message) -> None:
        text = f"{msg.source.name} invited {msg.param(0)} to {msg.param(1)}"
        buf = self.store.get_buffer(self.conn.id, self.routed_buffer_id())
        if buf is not None:
            self._append(buf, self._message(msg, "invite", text))

    # -- messages -----------------------------------------------------------

    def on_raw_privmsg(self, msg: Message) -> None:
        self._on_message(msg)

    def on_raw_notice(self, msg: Message) -> None:
        self._on_message(msg)

    def _resolve_buffer(self, msg: Message, sender: str) -> tuple[_Buffer | None, bool]:
        """Buffer a PRIVMSG/NOTICE lands in, and whether it is a whisper."""
        target = msg.param(0)
        name = self._channel_name(target)
        if name is not None:
            return self.store.ensure_channel(self.conn.id, name), False
        context = msg.tags.get("+draft/channel-context")
        server = self.server
        if context and server is not None:
            channel = server.get_channel(context)
            if channel is not None:
                return channel, True
        peer = target if self.conn.is_self(sender) else sender
        if not msg.source.nick or not self.conn.registered or target == "*":
            return server, False
        if msg.command == "NOTICE" and server is not None and server.get_private_chat(peer) is None:
            return server, False
        return self.store.ensure_private_chat(self.conn.id, peer), False

    def _on_message(self, msg: Message, lines: list[str] | None = None, *, replay: bool | None = None) -> None:
        sender = msg.source.name
        text = msg.param(1)
        self._track_account(msg)
        if replay is None:
            replay = self._is_replay(msg)

        msg_type = "notice" if msg.command == "NOTICE" else "message"
        if text.startswith("\x01"):
            ctcp = text.strip("\x01")
            command, _, body = ctcp.partition(" ")
            command = command.upper()
            if command == "ACTION":
                msg_type, text = "action", body
            else:
                if msg.command == "PRIVMSG" and not replay:
                    self._answer_ctcp(sender, command, body)
                return

        buf, whisper = self._resolve_buffer(msg, sender)
        if buf is None:
            return
        if whisper:
            msg_type = "whisper"
        message = self._message(msg, msg_type, text, sender=sender)
        message.reply_to = msg.tags.get("+draft/reply") or msg.tags.get("+reply")
        if lines is not None:
            message.is_multiline = True
            message.lines = list(lines)
        if not message.is_own and mentions(text, self.conn.nick):
            message.is_mention = True

        if isinstance(buf, (Channel, PrivateChat)):
            self.conn.typing.clear_typing(buf.id, sender)
        self._append(buf, message, replay=replay)
        if not replay:
            self._count_unread(buf, message)

    def _answer_ctcp(self, sender: str, command: str, body: str) -> None:
        if not sender or self.conn.is_self(sender):
            return
        if command == "VERSION":
            self.conn.send("NOTICE", sender, f"\x01VERSION tobby {__version__}\x01", trailing=True)
        elif command == "PING":
            self.conn.send("NOTICE", sender, f"\x01PING {body}\x01", trailing=True)
        else:
            logger.debug("Ignoring CTCP {} from {}", command, sender)

    def on_raw_tagmsg(self, msg: Message) -> None:
        sender = msg.source.nick
        if not sender:
            return
        self._track_account(msg)
        buf, _ = self._resolve_buffer(replace(msg, command="PRIVMSG"), sender)
        if buf is None:
            return
        replay = self._is_replay(msg)

        typing = next((msg.tags[t] for t in _TYPING_TAGS if t in msg.tags), None)
        if typing is not None and not replay:
            # Anything but "done" (active, paused) keeps the user listed
            if typing != "done":
                self.conn.typing.set_typing(buf.id, sender)
            else:
                self.conn.typing.clear_typing(buf.id, sender)

        target_msgid = msg.tags.get("+draft/reply") or msg.tags.get("+reply")
        if not target_msgid:
            return
        if "+draft/react" in msg.tags:
            self.conn.reactions.handle(buf.id, target_msgid, msg.tags["+draft/react"], sender)
        elif "+draft/unreact" in msg.tags:
            self.conn.reactions.handle(buf.id, target_msgid, msg.tags["+draft/unreact"], sender, removal=True)

    def on_raw_redact(self, msg: Message) -> None:
        # REDACT <target> <msgid> [:<reason>]
        msgid = msg.param(1)
        if not msgid:
            return
        found = self.store.find_message_anywhere(self.conn.id, msgid)
        if found is None:
            logger.debug("REDACT for unknown msgid {} on {}", msgid, self.conn.settings.name)
            return
        buf, message = found
        message.redacted = True
        message.content = _REDACTED_TEXT
        message.lines = []
        self.store.update_message(self.conn.id, buf.id, message)

    # -- batches ------------------------------------------------------------

    def on_raw_batch(self, msg: Message) -> None:
        ref = msg.param(0)
        if ref.startswith("+"):
            self.conn.batches.start(ref[1:], msg.param(1), msg.params[2:], msg.tags)
            return
        if not ref.startswith("-"):
            return
        batch = self.conn.batches.end(ref[1:])
        if batch is None:
            return
        if batch.is_multiline:
            self._flush_multiline(batch)
        if batch.replay:
            self.conn.reactions.sweep()

    def _flush_multiline(self, batch: Batch) -> None:
        if not batch.messages:
            return
        first = batch.messages[0]
        tags = {k: v for k, v in first.tags.items() if k not in ("batch", "draft/multiline-concat")}
        tags.update({k: v for k, v in batch.tags.items() if k != "batch"})
        lines = batch.multiline_lines()
        combined = replace(first, params=[batch.params[0] if batch.params else first.param(0), "\n".join(lines)], tags=tags)
        self._on_message(combined, lines, replay=batch.replay)

    # -- numerics -----------------------------------------------------------

    def _on_numeric(self, msg: Message) -> None:
        # A registered expectation (e.g. 482 after a MODE we sent) takes the reply instead
        callback = self.conn.take_expectation(msg.command)
        if callback is not None:
            callback(msg)
            return
        text = " ".join(p for p in msg.params[1:] if p)
        if not text:
            return
        is_error = msg.command[0] in "45"
        if msg.command in _SERVER_BUFFER_NUMERICS:
            buffer_id = self.conn.id
        else:
            buffer_id = self.routed_buffer_id()
        self.conn.system_message(text, buffer_id)
        if is_error:
            _, evt = error_raised(self.conn.id, msg.command, text, buffer_id=buffer_id, params=msg.params)
            self.conn.bus.publish("irc", evt)
