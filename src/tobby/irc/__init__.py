"""IRC protocol engine: transport, registration, keepalive, dispatch."""

from tobby.irc.client import IRCClient
from tobby.irc.connection import Connection
from tobby.irc.dispatcher import ProtocolDispatcher
from tobby.irc.handshake import RegistrationHandshake
from tobby.irc.keepalive import KeepaliveState, KeepaliveSupervisor, reconnect_delay
from tobby.irc.parser import Message, Source, build_line, parse_line
from tobby.irc.transport import ReadyState, TransportSocket

__all__ = [
    "Connection",
    "IRCClient",
    "KeepaliveState",
    "KeepaliveSupervisor",
    "Message",
    "ProtocolDispatcher",
    "ReadyState",
    "RegistrationHandshake",
    "Source",
    "TransportSocket",
    "build_line",
    "parse_line",
    "reconnect_delay",
]
