"""BATCH bookkeeping: replay detection and draft/multiline accumulation."""

from __future__ import annotations

from dataclasses import dataclass, field

from tobby.core.constants import REPLAY_BATCH_TYPES
from tobby.irc.parser import Message


@dataclass
class Batch:
    id: str
    type: str
    params: list[str] = field(default_factory=list)
    tags: dict[str, str] = field(default_factory=dict)
    parent: str | None = None
    replay: bool = False
    messages: list[Message] = field(default_factory=list)

    @property
    def is_multiline(self) -> bool:
        return self.type == "draft/multiline"

    def multiline_lines(self) -> list[str]:
        """Constituent lines; ``draft/multiline-concat`` lines join the previous one."""
        lines: list[str] = []
        for msg in self.messages:
            text = msg.param(1)
            if lines and "draft/multiline-concat" in msg.tags:
                lines[-1] += text
            else:
                lines.append(text)
        return lines


class BatchTracker:
    """Open batches of one connection."""

    def __init__(self) -> None:
        self._open: dict[str, Batch] = {}

    def __contains__(self, batch_id: str) -> bool:
        return batch_id in self._open

    def __len__(self) -> int:
        return len(self._open)

    def start(self, batch_id: str, batch_type: str, params: list[str], tags: dict[str, str]) -> Batch:
        parent = tags.get("batch")
        parent_batch = self._open.get(parent) if parent else None
        batch = Batch(
            id=batch_id,
            type=batch_type,
            params=list(params),
            tags=dict(tags),
            parent=parent,
            replay=batch_type in REPLAY_BATCH_TYPES or bool(parent_batch and parent_batch.replay),
        )
        self._open[batch_id] = batch
        return batch

    def end(self, batch_id: str) -> Batch | None:
        return self._open.pop(batch_id, None)

    def get(self, batch_id: str | None) -> Batch | None:
        if not batch_id:
            return None
        return self._open.get(batch_id)

    def is_replay(self, msg: Message) -> bool:
        batch = self.get(msg.batch)
        return bool(batch and batch.replay)

    def collecting(self, msg: Message) -> Batch | None:
        """The multiline batch this message belongs to, if any."""
        batch = self.get(msg.batch)
        if batch is not None and batch.is_multiline:
            return batch
        return None

    def clear(self) -> None:
        self._open.clear()
