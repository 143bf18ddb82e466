"""Gateway: event bus between the protocol engine and its subscribers."""

from tobby.gateway.bus import Bus, EventTarget

__all__ = ["Bus", "EventTarget"]
