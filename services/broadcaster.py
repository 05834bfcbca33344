# services/broadcaster.py
from __future__ import annotations
import logging
from typing import Callable, Iterable, List, Optional, Sequence

from services.session_state import Event

log = logging.getLogger(__name__)

SOCKET_EVENT = "session_event"


class SocketIORelay:
    """Fans events out to the Socket.IO room every participant joined."""
    name = "socketio"

    def __init__(self, socketio):
        self.socketio = socketio

    def publish(self, event: Event):
        self.socketio.emit(SOCKET_EVENT, event.envelope(), to=event.channel)


class Broadcaster:
    """
    Hands committed events to every relay, in the order the engine produced
    them. A relay that fails is logged and skipped: the session store already
    holds the truth and clients can re-fetch a snapshot.

    ``spawn`` (e.g. ``socketio.start_background_task``) moves delivery off
    the request; without it delivery runs inline.
    """

    def __init__(self, relays: Iterable = (), spawn: Optional[Callable] = None):
        self.relays: List = list(relays)
        self.spawn = spawn
        self.failures = 0

    def publish(self, events: Sequence[Event]):
        events = list(events)
        if not events:
            return
        if self.spawn is not None:
            self.spawn(self._deliver, events)
        else:
            self._deliver(events)

    def _deliver(self, events: List[Event]):
        for ev in events:
            for relay in self.relays:
                try:
                    relay.publish(ev)
                except Exception as e:
                    self.failures += 1
                    log.warning("[broadcast] %s failed for %s #%d (%s): %s",
                                getattr(relay, "name", type(relay).__name__),
                                ev.session_id, ev.sequence, ev.type, e)
