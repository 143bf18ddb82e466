"""Conversation model: servers, channels, private chats, members, messages."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import NamedTuple

from tobby.core.constants import CHANNEL_NAMESPACE


def channel_id_for(server_id: str, name: str) -> str:
    """Deterministic channel buffer id."""
    return str(uuid.uuid5(CHANNEL_NAMESPACE, f"{server_id}:{name.lower()}"))


def private_chat_id_for(server_id: str, nickname: str) -> str:
    """Deterministic private chat buffer id."""
    return str(uuid.uuid5(CHANNEL_NAMESPACE, f"{server_id}:query:{nickname.lower()}"))


def new_message_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Reaction(NamedTuple):
    """One emoji reaction from one user; unique per (emoji, reactor)."""

    emoji: str
    reactor: str


@dataclass
class Message:
    """One line in a buffer."""

    id: str
    type: str
    sender: str
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    msgid: str | None = None
    reply_to: str | None = None
    account: str | None = None
    reactions: list[Reaction] = field(default_factory=list)
    is_multiline: bool = False
    lines: list[str] = field(default_factory=list)
    redacted: bool = False
    is_own: bool = False
    is_mention: bool = False

    def add_reaction(self, emoji: str, reactor: str) -> bool:
        """Add a reaction. Returns False if the pair was already present."""
        reaction = Reaction(emoji, reactor)
        if reaction in self.reactions:
            return False
        self.reactions.append(reaction)
        return True

    def remove_reaction(self, emoji: str, reactor: str) -> bool:
        """Remove a reaction. Returns False if the pair was not present."""
        reaction = Reaction(emoji, reactor)
        if reaction not in self.reactions:
            return False
        self.reactions.remove(reaction)
        return True


@dataclass
class Member:
    """Channel member with status symbols ordered by rank."""

    nickname: str
    account: str | None = None
    modes: list[str] = field(default_factory=list)
    away: bool = False

    @property
    def prefix(self) -> str:
        return self.modes[0] if self.modes else ""


@dataclass
class _Buffer:
    id: str
    server_id: str
    messages: list[Message] = field(default_factory=list)
    unread_count: int = 0
    is_mentioned: bool = False
    typing: list[str] = field(default_factory=list)


@dataclass
class Channel(_Buffer):
    name: str = ""
    topic: str | None = None
    topic_set_by: str | None = None
    topic_set_at: datetime | None = None
    members: list[Member] = field(default_factory=list)
    joined: bool = False

    kind = "channel"

    def get_member(self, nickname: str) -> Member | None:
        lowered = nickname.lower()
        for member in self.members:
            if member.nickname.lower() == lowered:
                return member
        return None

    def remove_member(self, nickname: str) -> Member | None:
        member = self.get_member(nickname)
        if member is not None:
            self.members.remove(member)
        return member


@dataclass
class PrivateChat(_Buffer):
    username: str = ""

    kind = "private"


@dataclass
class Server(_Buffer):
    """Server record; doubles as the server buffer (buffer id == server id)."""

    name: str = ""
    host: str = ""
    port: int = 0
    nickname: str = ""
    connection_state: str = "disconnected"
    capabilities: list[str] = field(default_factory=list)
    network: str | None = None
    channels: list[Channel] = field(default_factory=list)
    private_chats: list[PrivateChat] = field(default_factory=list)

    kind = "server"

    @property
    def is_connected(self) -> bool:
        return self.connection_state == "connected"

    def get_channel(self, name: str) -> Channel | None:
        lowered = name.lower()
        for channel in self.channels:
            if channel.name.lower() == lowered:
                return channel
        return None

    def get_private_chat(self, nickname: str) -> PrivateChat | None:
        lowered = nickname.lower()
        for chat in self.private_chats:
            if chat.username.lower() == lowered:
                return chat
        return None

    def buffers(self) -> list[_Buffer]:
        """Every buffer owned by this server, server buffer first."""
        return [self, *self.channels, *self.private_chats]
