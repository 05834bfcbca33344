# services/engine.py
"""
Progression engine: pure transitions over (session, room).

Every function takes the current Session value and returns a new one plus the
events that describe the change. Inputs are never mutated, and a function
that raises leaves nothing behind, so the caller can commit the returned
session atomically or drop it.
"""
from __future__ import annotations
from dataclasses import replace
from datetime import datetime
from typing import List, Optional, Tuple

from services.definitions import RoomDefinition, normalize_answer
from services.errors import (
    AnswerRequired, BadRequest, BriefingIncomplete, HotspotNotFound, ItemLockHeld,
    MissingItems, NoMoreHints, NotLeader, NotLockHolder, SessionExpired,
    SessionNotActive, SessionNotStarted, StaleSubmission, UnknownParticipant,
)
from services.session_state import (
    Attempt, Event, ItemLock, Session, SessionStatus, required_acks, run_started, utcnow,
)

Transition = Tuple[Session, List[Event]]


# ---------- checks shared by every player action ----------

def _is_due(session: Session, room: RoomDefinition, now: datetime) -> bool:
    if not room.time_limit_seconds or session.started_at is None:
        return False
    return (now - session.started_at).total_seconds() >= room.time_limit_seconds


def _time_out(session: Session, room: RoomDefinition, now: datetime) -> Transition:
    timed_out = replace(session, status=SessionStatus.TIMED_OUT)
    timed_out, ev = timed_out.emit("SessionTimedOut", {
        "stage_index": session.current_stage_index,
        "elapsed_seconds": round(session.elapsed_seconds(now), 3),
        "time_limit_seconds": room.time_limit_seconds,
    }, now)
    return timed_out, [ev]


def _require_active(session: Session, room: RoomDefinition, now: datetime) -> None:
    if session.status.is_terminal:
        raise SessionNotActive(session.status.value)
    if session.status == SessionStatus.NOT_STARTED:
        raise SessionNotStarted()
    if _is_due(session, room, now):
        raise SessionExpired(*_time_out(session, room, now))


def _require_member(session: Session, participant: Optional[str]) -> str:
    who = (participant or "").strip()
    if who not in session.team:
        raise UnknownParticipant(who)
    return who


def _require_current(session: Session, stage_index) -> int:
    try:
        idx = int(stage_index)
    except (TypeError, ValueError):
        raise BadRequest("stage_index must be an integer")
    if idx != session.current_stage_index:
        raise StaleSubmission(idx, session.current_stage_index)
    return idx


# ---------- transitions ----------

def expire_if_due(session: Session, room: RoomDefinition, now: Optional[datetime] = None) -> Transition:
    """Lazy time-limit check for reads; no-op unless an active run ran out."""
    now = now or utcnow()
    if session.status == SessionStatus.IN_PROGRESS and _is_due(session, room, now):
        return _time_out(session, room, now)
    return session, []


def _record_and_resolve(session: Session, room: RoomDefinition, idx: int, submitted: str,
                        correct: bool, participant: str, now: datetime) -> Transition:
    attempt = Attempt(stage_index=idx, submitted_answer=submitted, correct=correct,
                      timestamp=now, participant=participant)
    session = replace(session, attempts=session.attempts + (attempt,))

    if not correct:
        session, ev = session.emit("AnswerRejected", {
            "stage_index": idx,
            "participant": participant,
            "attempt_count": sum(1 for a in session.attempts if a.stage_index == idx),
        }, now)
        return session, [ev]

    nxt = idx + 1
    if nxt >= room.stage_count:
        session = replace(session, current_stage_index=nxt,
                          status=SessionStatus.COMPLETED, completed_at=now)
        session, ev = session.emit("RoomCompleted", {
            "stage_index": idx,
            "participant": participant,
            "elapsed_seconds": round(session.elapsed_seconds(now), 3),
            "attempt_count": len(session.attempts),
        }, now)
        return session, [ev]

    session = replace(session, current_stage_index=nxt)
    stage = room.stage(nxt).public()
    stage["hints_revealed"] = 0
    session, ev = session.emit("StageAdvanced", {
        "solved_stage_index": idx,
        "stage_index": nxt,
        "participant": participant,
        "stage": stage,
    }, now)
    return session, [ev]


def submit_answer(session: Session, room: RoomDefinition, stage_index: int, raw_answer,
                  participant: str, now: Optional[datetime] = None) -> Transition:
    """Check an answer for the current stage and advance on success.

    Order of checks: session active, time limit, participant, stage index.
    Wrong answers are logged and broadcast but change nothing else.
    """
    now = now or utcnow()
    _require_active(session, room, now)
    who = _require_member(session, participant)
    idx = _require_current(session, stage_index)

    stage = room.stage(idx)
    submitted = "" if raw_answer is None else str(raw_answer)
    correct = stage.correct_answer is None or normalize_answer(submitted) == stage.correct_answer
    return _record_and_resolve(session, room, idx, submitted, correct, who, now)


def request_hint(session: Session, room: RoomDefinition, stage_index: int,
                 participant: Optional[str] = None, now: Optional[datetime] = None) -> Transition:
    """Reveal the next hint of the current stage, strictly one at a time."""
    now = now or utcnow()
    _require_active(session, room, now)
    if participant is not None:
        _require_member(session, participant)
    idx = _require_current(session, stage_index)

    stage = room.stage(idx)
    shown = session.hints_for(stage.order)
    if shown >= len(stage.hints):
        raise NoMoreHints(idx)
    k = shown + 1
    hints = dict(session.hints_revealed)
    hints[stage.order] = k
    session = replace(session, hints_revealed=hints)
    session, ev = session.emit("HintRevealed", {
        "stage_index": idx,
        "index": k,
        "text": stage.hints[k - 1],
        "remaining": len(stage.hints) - k,
        "participant": participant,
    }, now)
    return session, [ev]


def abandon(session: Session, now: Optional[datetime] = None) -> Transition:
    """Give up on the run. Abandoning twice is a no-op."""
    if session.status == SessionStatus.ABANDONED:
        return session, []
    if session.status.is_terminal:
        raise SessionNotActive(session.status.value)
    if session.status == SessionStatus.NOT_STARTED:
        raise SessionNotStarted()
    now = now or utcnow()
    session = replace(session, status=SessionStatus.ABANDONED)
    session, ev = session.emit("SessionAbandoned", {
        "stage_index": session.current_stage_index,
        "elapsed_seconds": round(session.elapsed_seconds(now), 3),
    }, now)
    return session, [ev]


def use_hotspot(session: Session, room: RoomDefinition, hotspot_id: str, participant: str,
                now: Optional[datetime] = None) -> Transition:
    """Act on a layout hotspot: pick up its item, or open its stage.

    A trigger only solves stages that have no answer to check; stages with an
    answer still go through ``submit_answer``.
    """
    now = now or utcnow()
    _require_active(session, room, now)
    who = _require_member(session, participant)
    spot = room.hotspot(hotspot_id)
    if spot is None:
        raise HotspotNotFound(hotspot_id)

    if spot.action == "pickup":
        item = room.item_by_id(spot.target_id)
        if item is None:
            raise BadRequest(f"Hotspot {hotspot_id!r} has nothing to pick up")
        if item.key in session.inventory:
            return session, []
        session = replace(session, inventory=session.inventory + (item.key,))
        session, ev = session.emit("ItemPickedUp", {
            "hotspot_id": spot.id,
            "participant": who,
            "item": item.public(),
            "inventory": list(session.inventory),
        }, now)
        return session, [ev]

    idx = room.stage_index(spot.target_id)
    if idx is None:
        raise BadRequest(f"Hotspot {hotspot_id!r} does not open a stage")
    missing = [k for k in spot.requires_items if k not in session.inventory]
    if missing:
        raise MissingItems(missing)
    _require_current(session, idx)
    if room.stage(idx).correct_answer is not None:
        raise AnswerRequired(idx)
    return _record_and_resolve(session, room, idx, "", True, who, now)


# ---------- briefing and start ----------

def acknowledge_briefing(session: Session, room: RoomDefinition, participant: str,
                         now: Optional[datetime] = None) -> Transition:
    """Record that ``participant`` read the briefing. Repeats are no-ops."""
    if session.status.is_terminal:
        raise SessionNotActive(session.status.value)
    who = _require_member(session, participant)
    if session.status != SessionStatus.NOT_STARTED or who in session.briefing_acks:
        return session, []
    now = now or utcnow()
    acks = dict(session.briefing_acks)
    acks[who] = now
    session = replace(session, briefing_acks=acks)
    session, ev = session.emit("BriefingAcknowledged", {
        "participant": who,
        "acknowledged": session.acknowledged(),
        "required_acks": required_acks(room, session),
    }, now)
    return session, [ev]


def start_run(session: Session, room: RoomDefinition, participant: str,
              now: Optional[datetime] = None) -> Transition:
    """Leader only: NotStarted -> InProgress once enough players acknowledged.

    Starting a run that already started changes nothing.
    """
    if session.status.is_terminal:
        raise SessionNotActive(session.status.value)
    who = _require_member(session, participant)
    if who != session.leader:
        raise NotLeader(who)
    if session.status == SessionStatus.IN_PROGRESS:
        return session, []
    acked, needed = len(session.acknowledged()), required_acks(room, session)
    if acked < needed:
        raise BriefingIncomplete(acked, needed)
    session, ev = run_started(session, room, now or utcnow())
    return session, [ev]


# ---------- inventory locks ----------

def _held_item(session: Session, item_key: str) -> str:
    key = (item_key or "").strip()
    if not key:
        raise BadRequest("item_key is required")
    if key not in session.inventory:
        raise BadRequest(f"Item {key!r} is not in inventory")
    return key


def acquire_item_lock(session: Session, room: RoomDefinition, item_key: str, participant: str,
                      now: Optional[datetime] = None) -> Transition:
    """Take (or refresh) a teammate's hold on an inventory item.

    Another player's live lock blocks; a lapsed one is taken over.
    """
    now = now or utcnow()
    _require_active(session, room, now)
    who = _require_member(session, participant)
    key = _held_item(session, item_key)
    current = session.item_locks.get(key)
    if current is not None and current.holder != who and not current.expired(now):
        raise ItemLockHeld(key, current)
    lock = ItemLock.taken(who, now)
    locks = dict(session.item_locks)
    locks[key] = lock
    session = replace(session, item_locks=locks)
    session, ev = session.emit("ItemLocked", {"item_key": key, **lock.to_dict()}, now)
    return session, [ev]


def release_item_lock(session: Session, room: RoomDefinition, item_key: str, participant: str,
                      now: Optional[datetime] = None) -> Transition:
    """Drop a hold. Only its holder or the leader may, unless it already lapsed."""
    now = now or utcnow()
    _require_active(session, room, now)
    who = _require_member(session, participant)
    key = (item_key or "").strip()
    current = session.item_locks.get(key)
    if current is None:
        return session, []
    if current.holder != who and who != session.leader and not current.expired(now):
        raise NotLockHolder(key, current.holder)
    locks = dict(session.item_locks)
    del locks[key]
    session = replace(session, item_locks=locks)
    session, ev = session.emit("ItemReleased", {"item_key": key, "participant": who, "holder": current.holder}, now)
    return session, [ev]
