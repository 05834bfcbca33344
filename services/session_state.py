# services/session_state.py
from __future__ import annotations
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from services.definitions import RoomDefinition
from services.errors import TeamSizeRejected, UnknownParticipant

ITEM_LOCK_SECONDS = 120


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands datetimes back naive
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SessionStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.ABANDONED, SessionStatus.TIMED_OUT)


@dataclass(frozen=True)
class Attempt:
    stage_index: int
    submitted_answer: str
    correct: bool
    timestamp: datetime
    participant: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage_index": self.stage_index,
            "submitted_answer": self.submitted_answer,
            "correct": self.correct,
            "timestamp": self.timestamp.isoformat(),
            "participant": self.participant,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Attempt":
        return cls(
            stage_index=int(d["stage_index"]),
            submitted_answer=d.get("submitted_answer", ""),
            correct=bool(d["correct"]),
            timestamp=as_utc(datetime.fromisoformat(d["timestamp"])),
            participant=d.get("participant", ""),
        )


@dataclass(frozen=True)
class ItemLock:
    """A teammate holding an inventory item; lapses after ITEM_LOCK_SECONDS."""
    holder: str
    acquired_at: datetime
    expires_at: datetime

    @classmethod
    def taken(cls, holder: str, now: datetime) -> "ItemLock":
        return cls(holder, now, now + timedelta(seconds=ITEM_LOCK_SECONDS))

    def expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "holder": self.holder,
            "acquired_at": self.acquired_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ItemLock":
        return cls(
            holder=d["holder"],
            acquired_at=as_utc(datetime.fromisoformat(d["acquired_at"])),
            expires_at=as_utc(datetime.fromisoformat(d["expires_at"])),
        )


@dataclass(frozen=True)
class Event:
    """One state change, numbered per session so clients can drop replays."""
    session_id: str
    type: str
    sequence: int
    payload: Dict[str, Any]
    created_at: datetime

    @property
    def channel(self) -> str:
        return channel_for(self.session_id)

    def envelope(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "room": self.channel,
            "event_type": self.type,
            "sequence": self.sequence,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }


def channel_for(session_id: str) -> str:
    return f"escape:{session_id}"


@dataclass(frozen=True)
class Session:
    id: str
    room_id: str
    team: FrozenSet[str]
    status: SessionStatus = SessionStatus.NOT_STARTED
    current_stage_index: int = 0
    hints_revealed: Dict[int, int] = field(default_factory=dict)
    attempts: Tuple[Attempt, ...] = ()
    inventory: Tuple[str, ...] = ()
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 0
    event_seq: int = 0
    leader: Optional[str] = None
    briefing_acks: Dict[str, datetime] = field(default_factory=dict)
    item_locks: Dict[str, ItemLock] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.IN_PROGRESS

    def hints_for(self, stage_order: int) -> int:
        return self.hints_revealed.get(stage_order, 0)

    def acknowledged(self) -> List[str]:
        return sorted(p for p in self.briefing_acks if p in self.team)

    def elapsed_seconds(self, now: Optional[datetime] = None) -> float:
        if self.started_at is None:
            return 0.0
        end = self.completed_at or now or utcnow()
        return max(0.0, (end - self.started_at).total_seconds())

    def emit(self, type_: str, payload: Dict[str, Any], now: datetime) -> Tuple["Session", Event]:
        """Return a copy with the sequence bumped, plus the event it numbered."""
        seq = self.event_seq + 1
        ev = Event(session_id=self.id, type=type_, sequence=seq, payload=payload, created_at=now)
        return replace(self, event_seq=seq), ev

    def snapshot(self, room: Optional[RoomDefinition] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "room_id": self.room_id,
            "team": sorted(self.team),
            "leader": self.leader,
            "status": self.status.value,
            "current_stage_index": self.current_stage_index,
            "hints_revealed": {str(k): v for k, v in sorted(self.hints_revealed.items())},
            "attempts": [a.to_dict() for a in self.attempts],
            "inventory": list(self.inventory),
            "item_locks": {k: lock.to_dict() for k, lock in sorted(self.item_locks.items())},
            "briefing_acks": {p: at.isoformat() for p, at in sorted(self.briefing_acks.items())},
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "elapsed_seconds": round(self.elapsed_seconds(now), 3),
            "version": self.version,
            "sequence": self.event_seq,
        }
        if room is not None:
            out["stage_count"] = room.stage_count
            out["time_limit_seconds"] = room.time_limit_seconds
            out["required_acks"] = required_acks(room, self)
            if self.status == SessionStatus.NOT_STARTED or self.current_stage_index >= room.stage_count:
                out["stage"] = None
            else:
                st = room.stage(self.current_stage_index)
                stage = st.public()
                revealed = self.hints_for(st.order)
                stage["hints_revealed"] = revealed
                stage["hints"] = list(st.hints[:revealed])
                out["stage"] = stage
            held = {it.key: it.public() for it in room.items}
            out["inventory_items"] = {k: held[k] for k in self.inventory if k in held}
        return out


def required_acks(room: RoomDefinition, session: Session) -> int:
    """Acknowledgements the leader needs before starting: the room's minimum team size."""
    return min(room.min_team_size, len(session.team))


def run_started(session: Session, room: RoomDefinition, now: datetime) -> Tuple[Session, Event]:
    session = replace(session, status=SessionStatus.IN_PROGRESS, current_stage_index=0, started_at=now)
    return session.emit("SessionStarted", {
        "team": sorted(session.team),
        "leader": session.leader,
        "stage_index": 0,
        "stage": room.stage(0).public(),
        "time_limit_seconds": room.time_limit_seconds,
    }, now)


def create_session(room: RoomDefinition, team: Iterable[str], now: Optional[datetime] = None,
                   session_id: Optional[str] = None, leader: Optional[str] = None) -> Tuple[Session, List[Event]]:
    """Open a run for ``team``; rejects teams outside the room's size range.

    Rooms in ``briefing`` start mode open NotStarted: every player reads the
    briefing and the leader starts the clock. Other rooms start at once.
    The leader defaults to the first listed player.
    """
    listed = [str(p).strip() for p in team if str(p).strip()]
    members = frozenset(listed)
    if not (room.min_team_size <= len(members) <= room.max_team_size):
        raise TeamSizeRejected((room.min_team_size, room.max_team_size), len(members))
    if leader is not None:
        leader = str(leader).strip()
        if leader not in members:
            raise UnknownParticipant(leader)
    else:
        leader = listed[0]
    now = now or utcnow()
    session = Session(
        id=session_id or str(uuid.uuid4()),
        room_id=room.id,
        team=members,
        leader=leader,
    )
    if room.start_mode == "briefing":
        session, ev = session.emit("BriefingOpened", {
            "team": sorted(members),
            "leader": leader,
            "required_acks": required_acks(room, session),
        }, now)
    else:
        session, ev = run_started(session, room, now)
    return session, [ev]
