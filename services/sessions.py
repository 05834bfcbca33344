# services/sessions.py
from __future__ import annotations
import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, MutableMapping, Optional, Tuple

from services import engine as rules
from services.broadcaster import Broadcaster
from services.errors import SessionExpired, SessionNotFound
from services.session_state import Event, Session, create_session
from services.store import EscapeStore

log = logging.getLogger(__name__)


class SessionService:
    """
    Runs player actions against a session: load, apply the engine, commit,
    then broadcast.

    Actions on one session are serialized by a per-session lock; the store's
    version check covers writers in other processes. Locks are only made
    for sessions that exist and live only while someone holds or waits on
    them. Broadcasting only happens after the commit succeeded, and its
    failures never reach the caller.
    """

    def __init__(self, store: EscapeStore, broadcaster: Optional[Broadcaster] = None, clock: Optional[Callable] = None):
        self.store = store
        self.broadcaster = broadcaster or Broadcaster()
        self.clock = clock
        self._locks: MutableMapping[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def _now(self):
        return self.clock() if self.clock else None

    @contextmanager
    def _locked(self, session_id: str):
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.Lock()
        with lock:
            yield

    def _commit(self, session: Session, events: List[Event]) -> Session:
        saved = self.store.save_session(session)
        self.broadcaster.publish(events)
        return saved

    def _run(self, session_id: str, step: Callable[[Session, Any], Tuple[Session, List[Event]]]):
        if not self.store.session_exists(session_id):
            raise SessionNotFound(session_id)
        with self._locked(session_id):
            session, room = self.store.load_session(session_id)
            try:
                new_session, events = step(session, room)
            except SessionExpired as exp:
                exp.session = self._commit(exp.session, exp.events)
                log.info("[session] %s timed out", session_id)
                raise
            if events:
                new_session = self._commit(new_session, events)
            return new_session, room, events

    # ------------------ operations ------------------
    def start(self, room_id: str, team: Iterable[str], leader: Optional[str] = None) -> Tuple[Session, Any]:
        room = self.store.load_room(room_id)
        session, events = create_session(room, team, now=self._now(), leader=leader)
        session = self.store.insert_session(session, room)
        log.info("[session] %s opened on %s by %d players (%s)", session.id, room.id,
                 len(session.team), session.status.value)
        self.broadcaster.publish(events)
        return session, room

    def submit_answer(self, session_id: str, stage_index: int, answer: Any, participant: str):
        return self._run(session_id, lambda s, r: rules.submit_answer(
            s, r, stage_index, answer, participant, now=self._now()))

    def request_hint(self, session_id: str, stage_index: int, participant: Optional[str] = None):
        return self._run(session_id, lambda s, r: rules.request_hint(
            s, r, stage_index, participant, now=self._now()))

    def use_hotspot(self, session_id: str, hotspot_id: str, participant: str):
        return self._run(session_id, lambda s, r: rules.use_hotspot(
            s, r, hotspot_id, participant, now=self._now()))

    def abandon(self, session_id: str):
        return self._run(session_id, lambda s, r: rules.abandon(s, now=self._now()))

    def acknowledge_briefing(self, session_id: str, participant: str):
        return self._run(session_id, lambda s, r: rules.acknowledge_briefing(
            s, r, participant, now=self._now()))

    def start_run(self, session_id: str, participant: str):
        return self._run(session_id, lambda s, r: rules.start_run(
            s, r, participant, now=self._now()))

    def acquire_item_lock(self, session_id: str, item_key: str, participant: str):
        return self._run(session_id, lambda s, r: rules.acquire_item_lock(
            s, r, item_key, participant, now=self._now()))

    def release_item_lock(self, session_id: str, item_key: str, participant: str):
        return self._run(session_id, lambda s, r: rules.release_item_lock(
            s, r, item_key, participant, now=self._now()))

    def get_session_snapshot(self, session_id: str) -> Dict[str, Any]:
        """Current state for (re)joining clients; marks overdue runs TimedOut."""
        session, room, _ = self._run(session_id, lambda s, r: rules.expire_if_due(s, r, now=self._now()))
        return session.snapshot(room, now=self._now())
