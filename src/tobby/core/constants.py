"""Protocol constants."""

from __future__ import annotations

import uuid
from typing import Literal

DEFAULT_PORT = 6667
DEFAULT_TLS_PORT = 6697

PING_INTERVAL = 30.0
PONG_TIMEOUT = 30.0
TYPING_TIMEOUT = 30.0
# Minimum gap between outgoing "active" typing notifications per target
TYPING_SEND_INTERVAL = 3.0
# Reactions waiting for a target message we have not seen: how many targets, for how long
PENDING_REACTION_LIMIT = 256
PENDING_REACTION_TTL = 300.0

# Reconnect delays in seconds, clamped at the last entry
BACKOFF_LADDER: tuple[float, ...] = (3, 6, 12, 24, 30)

HISTORY_LIMIT = 50
MAX_LINE_BYTES = 450

# uuid5 namespace for deterministic channel ids
CHANNEL_NAMESPACE = uuid.UUID("6ba7b810-9dad-11d1-80b4-00c04fd430c8")

# Capabilities requested when offered; sasl is added when credentials exist
WANTED_CAPS: tuple[str, ...] = (
    "multi-prefix",
    "message-tags",
    "server-time",
    "echo-message",
    "batch",
    "labeled-response",
    "account-notify",
    "account-tag",
    "away-notify",
    "extended-join",
    "chghost",
    "setname",
    "userhost-in-names",
    "invite-notify",
    "draft/chathistory",
    "draft/event-playback",
    "draft/multiline",
    "draft/message-redaction",
    "draft/typing",
    "draft/react",
    "draft/reply",
)

# Batch types whose content is history rather than live traffic
REPLAY_BATCH_TYPES = frozenset({"chathistory", "znc.in/playback"})

# Prefix mode letters to status symbols when the server sends no PREFIX token
DEFAULT_PREFIX = "(qaohv)~&@%+"
DEFAULT_CHANMODES = "beI,k,l,imnpst"
DEFAULT_CHANTYPES = "#&"

ConnectionState = Literal["disconnected", "connecting", "connected", "reconnecting"]
CONNECTION_STATES: tuple[ConnectionState, ...] = ("disconnected", "connecting", "connected", "reconnecting")

MessageType = Literal[
    "message",
    "action",
    "notice",
    "system",
    "join",
    "part",
    "quit",
    "kick",
    "nick",
    "mode",
    "whisper",
    "invite",
]
