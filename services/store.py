# services/store.py
"""
SQLModel persistence for rooms and sessions.

Rooms are validated whenever they are read or written. Sessions are saved
with a compare-and-swap on ``version`` so two writers that read the same
state cannot both commit.
"""
from __future__ import annotations
import json
import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Mapping, Tuple

from sqlalchemy import delete, update
from sqlmodel import SQLModel, Session as DBSession, create_engine, select

from models import EscapeRoom, EscapeStage, Hotspot, ItemDefinition, TeamSession, utcnow
from services.definitions import RoomDefinition, build_room
from services.errors import ConcurrentModification, InvalidRoomDefinition, RoomNotFound, SessionNotFound
from services.session_state import Attempt, ItemLock, Session, SessionStatus, as_utc

log = logging.getLogger(__name__)


def make_engine(db_uri: str):
    kwargs: Dict[str, Any] = {"echo": False}
    if db_uri.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    engine = create_engine(db_uri, **kwargs)
    SQLModel.metadata.create_all(engine)
    return engine


class EscapeStore:
    def __init__(self, engine):
        self.engine = engine

    # ------------------ rooms ------------------
    def import_room(self, payload: Mapping[str, Any]) -> RoomDefinition:
        """Validate and store a room document, replacing any earlier version."""
        room = build_room(payload)
        with DBSession(self.engine) as s:
            row = s.get(EscapeRoom, room.id)
            if row is None:
                row = EscapeRoom(id=room.id)
            row.title = room.title
            row.min_team_size = room.min_team_size
            row.max_team_size = room.max_team_size
            row.time_limit_seconds = room.time_limit_seconds
            row.start_mode = room.start_mode
            row.updated_at = utcnow()
            s.add(row)
            for table in (EscapeStage, ItemDefinition, Hotspot):
                s.exec(delete(table).where(table.room_id == room.id))
            for st in room.stages:
                s.add(EscapeStage(
                    room_id=room.id, stage_id=st.id, order=st.order, title=st.title,
                    puzzle_type=st.puzzle_type, puzzle_data=st.puzzle.to_json(),
                    correct_answer=st.correct_answer,
                    hints=list(st.hints),
                ))
            for it in room.items:
                s.add(ItemDefinition(room_id=room.id, item_id=it.id, key=it.key,
                                     name=it.name, image_url=it.image_url))
            for h in room.hotspots:
                s.add(Hotspot(room_id=room.id, hotspot_id=h.id, target_id=h.target_id,
                              action=h.action, x=h.x, y=h.y, width=h.width, height=h.height,
                              meta={**h.meta, "requires_items": list(h.requires_items)}))
            s.commit()
        log.info("[store] room %s imported (%d stages)", room.id, room.stage_count)
        return room

    def load_room(self, room_id: str) -> RoomDefinition:
        with DBSession(self.engine) as s:
            row = s.get(EscapeRoom, room_id)
            if row is None:
                raise RoomNotFound(room_id)
            stages = s.exec(select(EscapeStage).where(EscapeStage.room_id == room_id)
                            .order_by(EscapeStage.order)).all()
            items = s.exec(select(ItemDefinition).where(ItemDefinition.room_id == room_id)).all()
            spots = s.exec(select(Hotspot).where(Hotspot.room_id == room_id)).all()
            payload = {
                "id": row.id,
                "title": row.title,
                "min_team_size": row.min_team_size,
                "max_team_size": row.max_team_size,
                "time_limit_seconds": row.time_limit_seconds,
                "start_mode": row.start_mode,
                "stages": [{
                    "id": st.stage_id, "order": st.order, "title": st.title,
                    "puzzle_type": st.puzzle_type, "puzzle_data": st.puzzle_data,
                    "correct_answer": st.correct_answer, "hints": st.hints,
                } for st in stages],
                "items": [{
                    "id": it.item_id, "key": it.key, "name": it.name, "image_url": it.image_url,
                } for it in items],
                "hotspots": [{
                    "id": h.hotspot_id, "target_id": h.target_id, "action": h.action,
                    "x": h.x, "y": h.y, "width": h.width, "height": h.height, "meta": h.meta,
                } for h in spots],
            }
        try:
            return build_room(payload)
        except InvalidRoomDefinition as e:
            log.error("[store] room %s rejected at load: %s", room_id, e.problems)
            raise

    # ------------------ sessions ------------------
    def insert_session(self, session: Session, room: RoomDefinition) -> Session:
        stored = replace(session, version=1)
        row = TeamSession(id=session.id, room_id=room.id, room_snapshot=_json_safe(room.source),
                          **_session_columns(stored))
        with DBSession(self.engine) as s:
            s.add(row)
            s.commit()
        return stored

    def session_exists(self, session_id: str) -> bool:
        with DBSession(self.engine) as s:
            return s.get(TeamSession, session_id) is not None

    def load_session(self, session_id: str) -> Tuple[Session, RoomDefinition]:
        """The session and the room snapshot it runs against."""
        with DBSession(self.engine) as s:
            row = s.get(TeamSession, session_id)
            if row is None:
                raise SessionNotFound(session_id)
            return _row_to_session(row), build_room(row.room_snapshot)

    def save_session(self, session: Session) -> Session:
        """Commit ``session`` if nobody saved since it was read; return it at its new version."""
        values = _session_columns(session)
        values["version"] = session.version + 1
        values["updated_at"] = utcnow()
        stmt = (update(TeamSession)
                .where(TeamSession.id == session.id)
                .where(TeamSession.version == session.version)
                .values(**values))
        with DBSession(self.engine) as s:
            result = s.exec(stmt)
            s.commit()
            if result.rowcount != 1:
                if s.get(TeamSession, session.id) is None:
                    raise SessionNotFound(session.id)
                raise ConcurrentModification(session.id, session.version)
        return replace(session, version=session.version + 1)


# ------------------ helpers ------------------
def _json_safe(doc: Mapping[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(dict(doc), default=str))


def _session_columns(session: Session) -> Dict[str, Any]:
    return {
        "team": sorted(session.team),
        "status": session.status.value,
        "current_stage_index": session.current_stage_index,
        "hints_revealed": {str(k): v for k, v in session.hints_revealed.items()},
        "attempts": [a.to_dict() for a in session.attempts],
        "inventory": list(session.inventory),
        "started_at": session.started_at,
        "completed_at": session.completed_at,
        "version": session.version,
        "event_seq": session.event_seq,
        "leader": session.leader,
        "briefing_acks": {p: at.isoformat() for p, at in session.briefing_acks.items()},
        "item_locks": {k: lock.to_dict() for k, lock in session.item_locks.items()},
    }


def _row_to_session(row: TeamSession) -> Session:
    return Session(
        id=row.id,
        room_id=row.room_id,
        team=frozenset(row.team or []),
        status=SessionStatus(row.status),
        current_stage_index=row.current_stage_index,
        hints_revealed={int(k): int(v) for k, v in (row.hints_revealed or {}).items()},
        attempts=tuple(Attempt.from_dict(a) for a in (row.attempts or [])),
        inventory=tuple(row.inventory or []),
        started_at=as_utc(row.started_at),
        completed_at=as_utc(row.completed_at),
        version=row.version,
        event_seq=row.event_seq,
        leader=row.leader,
        briefing_acks={p: as_utc(datetime.fromisoformat(at)) for p, at in (row.briefing_acks or {}).items()},
        item_locks={k: ItemLock.from_dict(d) for k, d in (row.item_locks or {}).items()},
    )
