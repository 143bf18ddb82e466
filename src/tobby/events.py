"""Event types and dispatcher: the typed stream the UI layer subscribes to."""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from tobby.store.models import Message


@dataclass
class ConnectionStateChanged:
    """Lifecycle transition of one server connection."""

    server_id: str
    state: str  # "disconnected" | "connecting" | "connected" | "reconnecting"
    previous: str | None = None
    reason: str | None = None


@dataclass
class MessageAdded:
    """Message appended to a buffer."""

    server_id: str
    buffer_id: str
    message: Message
    replayed: bool = False


@dataclass
class MessageUpdated:
    """Message mutated in place (reactions, redaction)."""

    server_id: str
    buffer_id: str
    message: Message


@dataclass
class BufferCreated:
    """Channel or private chat buffer created."""

    server_id: str
    buffer_id: str
    kind: str  # "channel" | "private"
    name: str


@dataclass
class BufferUpdated:
    """Fields of a server, channel or private chat buffer changed."""

    server_id: str
    buffer_id: str
    changes: dict[str, Any] = field(default_factory=dict)


@dataclass
class BufferRemoved:
    """Channel buffer destroyed (self-part)."""

    server_id: str
    buffer_id: str


@dataclass
class BuffersCleared:
    """Every buffer of a server was emptied ahead of a reconnect."""

    server_id: str


@dataclass
class TypingChanged:
    """Set of users typing in a buffer changed."""

    server_id: str
    buffer_id: str
    users: list[str] = field(default_factory=list)


@dataclass
class CapabilitiesChanged:
    """Capability set changed (ACK at registration, or CAP NEW/DEL later)."""

    server_id: str
    capabilities: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


@dataclass
class ErrorRaised:
    """Application-level rejection or error reply from the server."""

    server_id: str
    code: str
    message: str
    buffer_id: str | None = None
    params: list[str] = field(default_factory=list)


class EventTarget(Protocol):
    """Subscriber interface: accept_event + push_event."""

    def accept_event(self, source: str, evt: object) -> bool:
        """Return True if this target wants the event."""
        ...

    def push_event(self, source: str, evt: object) -> None:
        """Handle the event."""
        ...


def event(type_name: str):
    """Decorator to mark a factory as producing an event with a given type."""

    def decorator(f: Any) -> Any:
        @functools.wraps(f)
        def wrapper(*args: Any, **kwargs: Any) -> tuple[str, object]:
            evt = f(*args, **kwargs)
            return (type_name, evt)

        wrapper.TYPE = type_name  # type: ignore[attr-defined]
        return wrapper

    return decorator


@event("connection_state")
def connection_state(
    server_id: str,
    state: str,
    *,
    previous: str | None = None,
    reason: str | None = None,
) -> ConnectionStateChanged:
    return ConnectionStateChanged(server_id=server_id, state=state, previous=previous, reason=reason)


@event("message_added")
def message_added(server_id: str, buffer_id: str, message: Message, *, replayed: bool = False) -> MessageAdded:
    return MessageAdded(server_id=server_id, buffer_id=buffer_id, message=message, replayed=replayed)


@event("message_updated")
def message_updated(server_id: str, buffer_id: str, message: Message) -> MessageUpdated:
    return MessageUpdated(server_id=server_id, buffer_id=buffer_id, message=message)


@event("buffer_created")
def buffer_created(server_id: str, buffer_id: str, kind: str, name: str) -> BufferCreated:
    return BufferCreated(server_id=server_id, buffer_id=buffer_id, kind=kind, name=name)


@event("buffer_updated")
def buffer_updated(server_id: str, buffer_id: str, **changes: Any) -> BufferUpdated:
    return BufferUpdated(server_id=server_id, buffer_id=buffer_id, changes=changes)


@event("buffer_removed")
def buffer_removed(server_id: str, buffer_id: str) -> BufferRemoved:
    return BufferRemoved(server_id=server_id, buffer_id=buffer_id)


@event("buffers_cleared")
def buffers_cleared(server_id: str) -> BuffersCleared:
    return BuffersCleared(server_id=server_id)


@event("typing_changed")
def typing_changed(server_id: str, buffer_id: str, users: list[str]) -> TypingChanged:
    return TypingChanged(server_id=server_id, buffer_id=buffer_id, users=list(users))


@event("capabilities_changed")
def capabilities_changed(
    server_id: str,
    capabilities: list[str],
    *,
    added: list[str] | None = None,
    removed: list[str] | None = None,
) -> CapabilitiesChanged:
    return CapabilitiesChanged(
        server_id=server_id,
        capabilities=sorted(capabilities),
        added=list(added or []),
        removed=list(removed or []),
    )


@event("error_raised")
def error_raised(
    server_id: str,
    code: str,
    message: str,
    *,
    buffer_id: str | None = None,
    params: list[str] | None = None,
) -> ErrorRaised:
    return ErrorRaised(server_id=server_id, code=code, message=message, buffer_id=buffer_id, params=list(params or []))


class Dispatcher:
    """Central event dispatcher; targets filter by type and receive events."""

    def __init__(self) -> None:
        self._targets: list[EventTarget] = []

    def register(self, target: EventTarget) -> None:
        """Register an event target."""
        self._targets.append(target)

    def unregister(self, target: EventTarget) -> None:
        """Unregister an event target."""
        if target in self._targets:
            self._targets.remove(target)

    def dispatch(self, source: str, evt: object) -> None:
        """Dispatch event to all targets that accept it."""
        from loguru import logger

        for target in list(self._targets):
            try:
                if target.accept_event(source, evt):
                    target.push_event(source, evt)
            except Exception as exc:
                logger.exception("Failed to pass event to target {}: {}", target, exc)
