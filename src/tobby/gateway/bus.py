"""The bus every engine component publishes on and the UI subscribes to."""

from tobby.events import Dispatcher, EventTarget

__all__ = ["Bus", "EventTarget"]


class Bus:
    """Fan-out of engine events to subscribers.

    Publishers pass a short source label ("irc", "store", "typing") so a
    subscriber can filter on where an event came from as well as its type.
    Delivery is synchronous and in registration order.
    """

    def __init__(self) -> None:
        self._dispatcher = Dispatcher()

    def register(self, target: EventTarget) -> None:
        self._dispatcher.register(target)

    def unregister(self, target: EventTarget) -> None:
        self._dispatcher.unregister(target)

    @property
    def _subscribers(self) -> list[EventTarget]:
        return self._dispatcher._targets

    def publish(self, source: str, evt: object) -> None:
        self._dispatcher.dispatch(source, evt)
