"""Reactions that may arrive before the message they target."""

from __future__ import annotations

from collections.abc import Callable
from time import monotonic
from typing import NamedTuple

from cachetools import TTLCache
from loguru import logger

from tobby.core.constants import PENDING_REACTION_LIMIT, PENDING_REACTION_TTL
from tobby.store.buffers import BufferStore
from tobby.store.models import Message


class PendingReaction(NamedTuple):
    buffer_id: str
    emoji: str
    reactor: str
    removal: bool


class ReactionReconciler:
    """Applies react/unreact events, holding those whose target is not stored yet.

    Held entries are keyed by target msgid. They are applied when a message
    with that msgid is appended, or swept when a replay batch ends: applied if
    the target exists by then, dropped otherwise. Live reactions to messages
    this client never loads age out of the TTLCache instead, and the number
    of held targets is capped.
    """

    def __init__(
        self,
        store: BufferStore,
        server_id: str,
        *,
        maxsize: int = PENDING_REACTION_LIMIT,
        ttl: float = PENDING_REACTION_TTL,
        timer: Callable[[], float] = monotonic,
    ) -> None:
        self._store = store
        self._server_id = server_id
        self._maxsize = maxsize
        self._ttl = ttl
        self._timer = timer
        self._pending = self._new_pending()

    def _new_pending(self) -> TTLCache[str, list[PendingReaction]]:
        return TTLCache(maxsize=self._maxsize, ttl=self._ttl, timer=self._timer)

    def __len__(self) -> int:
        return sum(len(v) for v in self._pending.values())

    def pending_for(self, msgid: str) -> list[PendingReaction]:
        return list(self._pending.get(msgid, []))

    def handle(self, buffer_id: str, msgid: str, emoji: str, reactor: str, *, removal: bool = False) -> bool:
        """Apply now if the target is stored; otherwise hold. Returns True if applied."""
        message = self._store.find_message(self._server_id, buffer_id, msgid)
        if message is not None:
            self._apply(buffer_id, message, PendingReaction(buffer_id, emoji, reactor, removal))
            return True
        self._pending.setdefault(msgid, []).append(PendingReaction(buffer_id, emoji, reactor, removal))
        logger.debug("Holding reaction {} on {} until it arrives", emoji, msgid)
        return False

    def on_message_appended(self, buffer_id: str, message: Message) -> int:
        """Flush held reactions targeting a just-appended message."""
        if not message.msgid or message.msgid not in self._pending:
            return 0
        entries = self._pending.pop(message.msgid)
        keep = [e for e in entries if e.buffer_id != buffer_id]
        if keep:
            self._pending[message.msgid] = keep
        applied = 0
        for entry in entries:
            if entry.buffer_id == buffer_id:
                self._apply(buffer_id, message, entry)
                applied += 1
        return applied

    def sweep(self) -> tuple[int, int]:
        """Apply every held entry whose target exists; drop the rest. Returns (applied, dropped)."""
        applied = dropped = 0
        pending, self._pending = dict(self._pending.items()), self._new_pending()
        for msgid, entries in pending.items():
            for entry in entries:
                message = self._store.find_message(self._server_id, entry.buffer_id, msgid)
                if message is None:
                    dropped += 1
                    continue
                self._apply(entry.buffer_id, message, entry)
                applied += 1
        if dropped:
            logger.debug("Dropped {} reactions whose target never arrived", dropped)
        return applied, dropped

    def clear(self) -> None:
        self._pending.clear()

    def _apply(self, buffer_id: str, message: Message, entry: PendingReaction) -> None:
        if entry.removal:
            changed = message.remove_reaction(entry.emoji, entry.reactor)
        else:
            changed = message.add_reaction(entry.emoji, entry.reactor)
        if changed:
            self._store.update_message(self._server_id, buffer_id, message)
