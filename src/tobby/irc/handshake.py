"""Registration: CAP negotiation, SASL PLAIN, NICK/USER and nick collision retry."""

from __future__ import annotations

import asyncio
import base64

from loguru import logger

from tobby.core.constants import WANTED_CAPS
from tobby.events import capabilities_changed
from tobby.irc.connection import Connection
from tobby.irc.parser import Message
from tobby.storage.database import Persistence, normalize_channel_name

_SASL_SUCCESS = {"903", "907"}
_SASL_FAILURE = {"902", "904", "905", "906"}
_AUTHENTICATE_CHUNK = 400


def sasl_plain_payload(username: str, password: str) -> str:
    raw = f"{username}\0{username}\0{password}".encode()
    return base64.b64encode(raw).decode("ascii")


class RegistrationHandshake:
    """Turns an OPEN transport into a registered session."""

    def __init__(
        self,
        conn: Connection,
        *,
        persistence: Persistence | None = None,
        wanted_caps: tuple[str, ...] = WANTED_CAPS,
    ) -> None:
        self.conn = conn
        self.persistence = persistence
        self.wanted_caps = wanted_caps
        self.registered: asyncio.Future[str] | None = None
        self._ls_tokens: list[str] = []
        self._offered: dict[str, str] = {}
        self._sasl_pending = False
        self._negotiating = False

    @property
    def offered(self) -> dict[str, str]:
        return dict(self._offered)

    def start(self) -> None:
        """Send the opening registration burst. Called once the transport is OPEN."""
        conn = self.conn
        settings = conn.settings
        self.registered = asyncio.get_running_loop().create_future()
        self._ls_tokens = []
        self._offered = {}
        self._sasl_pending = False
        self._negotiating = True
        conn.nick = settings.nickname
        conn.typing.own_nick = settings.nickname
        conn.send("CAP", "LS", "302")
        if settings.password:
            conn.send("PASS", settings.password)
        conn.send("NICK", conn.nick)
        conn.send("USER", settings.username, "0", "*", settings.realname, trailing=True)

    def abort(self) -> None:
        """Transport went away before welcome."""
        self._negotiating = False
        self._sasl_pending = False
        if self.registered is not None and not self.registered.done():
            self.registered.cancel()

    def handle(self, msg: Message) -> bool:
        """Consume registration-related lines. Returns True when handled."""
        command = msg.command
        if command == "CAP":
            self._on_cap(msg)
            return True
        if command == "AUTHENTICATE":
            self._on_authenticate(msg)
            return True
        if command == "001":
            self._on_welcome(msg)
            return True
        if command == "433" and not self.conn.registered:
            self._on_nick_in_use(msg)
            return True
        if command in _SASL_SUCCESS:
            logger.info("SASL authentication succeeded on {}", self.conn.settings.name)
            self._finish_sasl()
            return True
        if command in _SASL_FAILURE:
            reason = msg.param(-1, "SASL authentication failed")
            logger.warning("SASL authentication failed on {}: {}", self.conn.settings.name, reason)
            self.conn.system_message(f"SASL authentication failed: {reason}")
            self._finish_sasl()
            return True
        if command == "900":
            # RPL_LOGGEDIN: <nick> <nick!ident@host> <account> :You are now logged in as <user>
            if len(msg.params) >= 3:
                self.conn.set_account(self.conn.nick, msg.params[2])
            return True
        if command == "901":
            self.conn.set_account(self.conn.nick, None)
            return True
        if command == "908":
            return True
        return False

    # -- CAP ----------------------------------------------------------------

    def _on_cap(self, msg: Message) -> None:
        sub = msg.param(1).upper()
        if sub == "LS":
            self._on_cap_ls(msg)
        elif sub == "ACK":
            self._on_cap_ack(msg.param(-1).split())
        elif sub == "NAK":
            logger.warning("Capabilities refused by {}: {}", self.conn.settings.name, msg.param(-1))
            if not self._sasl_pending:
                self._end_negotiation()
        elif sub in ("NEW", "DEL"):
            self._on_cap_change(sub, msg.param(-1).split())
        elif sub == "LIST":
            logger.debug("Active capabilities on {}: {}", self.conn.settings.name, msg.param(-1))

    def _on_cap_ls(self, msg: Message) -> None:
        # CAP * LS * :more...   (continuation)   |   CAP * LS :final
        continued = len(msg.params) >= 4 and msg.params[2] == "*"
        self._ls_tokens.extend(msg.param(-1).split())
        if continued:
            return
        for token in self._ls_tokens:
            name, _, value = token.partition("=")
            self._offered[name] = value
        self._ls_tokens = []
        if self.conn.registered:
            return
        request = [cap for cap in self.wanted_caps if cap in self._offered]
        if self.conn.settings.has_sasl and "sasl" in self._offered:
            mechanisms = self._offered["sasl"]
            if not mechanisms or "PLAIN" in mechanisms.upper().split(","):
                request.append("sasl")
            else:
                self.conn.system_message(f"SASL PLAIN not offered (server offers {mechanisms})")
        if not request:
            self._end_negotiation()
            return
        logger.debug("Requesting capabilities on {}: {}", self.conn.settings.name, request)
        self.conn.send("CAP", "REQ", " ".join(request), trailing=True)

    def _on_cap_ack(self, caps: list[str]) -> None:
        self.conn.merge_caps(caps)
        if "sasl" in caps and self.conn.settings.has_sasl and not self.conn.registered:
            self._sasl_pending = True
            self.conn.send("AUTHENTICATE", "PLAIN")
            return
        if not self._sasl_pending:
            self._end_negotiation()

    def _on_cap_change(self, sub: str, caps: list[str]) -> None:
        if sub == "NEW":
            for token in caps:
                name, _, value = token.partition("=")
                self._offered[name] = value
            _, evt = capabilities_changed(self.conn.id, list(self.conn.caps), added=caps)
        else:
            for token in caps:
                self._offered.pop(token.partition("=")[0], None)
            _, evt = capabilities_changed(self.conn.id, list(self.conn.caps), removed=caps)
        self.conn.bus.publish("irc", evt)

    def _end_negotiation(self) -> None:
        if not self._negotiating:
            return
        self._negotiating = False
        self.conn.send("CAP", "END")

    # -- SASL ---------------------------------------------------------------

    def _on_authenticate(self, msg: Message) -> None:
        if msg.param(0) != "+" or not self._sasl_pending:
            return
        settings = self.conn.settings
        payload = sasl_plain_payload(settings.sasl_username or "", settings.sasl_password or "")
        chunks = [payload[i : i + _AUTHENTICATE_CHUNK] for i in range(0, len(payload), _AUTHENTICATE_CHUNK)]
        for chunk in chunks:
            self.conn.send("AUTHENTICATE", chunk)
        if len(chunks[-1]) == _AUTHENTICATE_CHUNK:
            self.conn.send("AUTHENTICATE", "+")

    def _finish_sasl(self) -> None:
        self._sasl_pending = False
        self._end_negotiation()

    # -- NICK / welcome -----------------------------------------------------

    def _on_nick_in_use(self, msg: Message) -> None:
        rejected = msg.param(1) or self.conn.nick
        new_nick = f"{rejected}_"
        logger.info("Nick {} in use on {}, trying {}", rejected, self.conn.settings.name, new_nick)
        self.conn.nick = new_nick
        self.conn.send("NICK", new_nick)

    def _on_welcome(self, msg: Message) -> None:
        conn = self.conn
        confirmed = msg.param(0) or conn.nick
        self._negotiating = False
        self._sasl_pending = False
        conn.set_nick(confirmed)
        conn.registered = True
        conn.caps_frozen = True
        logger.info("Registered on {} as {}", conn.settings.name, confirmed)
        if conn.keepalive is not None:
            conn.keepalive.on_registered()
        conn.set_state("connected")
        self._auto_join()
        if self.registered is not None and not self.registered.done():
            self.registered.set_result(confirmed)

    def _auto_join(self) -> None:
        conn = self.conn
        server = conn.store.get_server(conn.id)
        open_channels = {c.name.lower() for c in server.channels if c.joined} if server else set()
        wanted: list[str] = []
        if self.persistence is not None:
            wanted.extend(record.name for record in self.persistence.list_auto_join_channels(conn.id))
        else:
            wanted.extend(normalize_channel_name(name) for name in conn.settings.auto_join)
        # Channels still listed from before a reconnect
        if server is not None:
            wanted.extend(c.name for c in server.channels if not c.joined)
        seen: set[str] = set()
        for name in wanted:
            key = name.lower()
            if key in open_channels or key in seen:
                continue
            seen.add(key)
            conn.send("JOIN", name)
