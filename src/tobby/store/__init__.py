"""Conversation state: models and the buffer store."""

from tobby.store.buffers import BufferStore
from tobby.store.models import Channel, Member, Message, PrivateChat, Reaction, Server

__all__ = ["BufferStore", "Channel", "Member", "Message", "PrivateChat", "Reaction", "Server"]
