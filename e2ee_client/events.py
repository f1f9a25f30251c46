"""
Security events surfaced to the application.
"""

import logging
from dataclasses import dataclass
from typing import Callable, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityKeyChanged:
    """
    A peer presented an identity key different from the one we recorded.

    The handshake still completes; the application decides how to warn the user.
    """
    peer_id: str
    previous_key: bytes
    new_key: bytes


Listener = Callable[[object], None]


class EventEmitter:
    """Synchronous fan-out of events to subscribed listeners"""

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            A callable that removes the listener again
        """
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: object):
        """Deliver an event to every listener; a failing listener does not stop the others"""
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s", type(event).__name__)
