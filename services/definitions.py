# services/definitions.py
"""
Room definitions: the read-only description of an escape room.

A room is built (and validated) once, from the JSON document the store keeps
or an import file. Sessions keep that document as a snapshot, so a room edited
later never changes a run already in progress.
"""
from __future__ import annotations
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

from pydantic import (
    BaseModel, ConfigDict, Field, PrivateAttr, StrictInt, ValidationError,
    field_validator, model_validator,
)
from pydantic_core import PydanticCustomError

from puzzles.base import Puzzle
from puzzles.registry import parse_puzzle
from services.errors import InvalidRoomDefinition


def normalize_answer(raw: Any) -> str:
    """Trim and case-fold, so " Warehouse " and "WAREHOUSE" compare equal."""
    if raw is None:
        return ""
    return str(raw).strip().casefold()


@dataclass(frozen=True)
class StageDefinition:
    id: str
    order: int
    title: str
    puzzle: Puzzle
    correct_answer: Optional[str]  # already normalized; None = auto-advance
    hints: Tuple[str, ...] = ()

    @property
    def puzzle_type(self) -> str:
        return self.puzzle.puzzle_type

    def public(self) -> Dict[str, Any]:
        """What players may see: no answer, no hint texts."""
        return {
            "id": self.id,
            "order": self.order,
            "title": self.title,
            "puzzle_type": self.puzzle_type,
            "puzzle": self.puzzle.get_prompt(),
            "hint_count": len(self.hints),
            "needs_answer": self.correct_answer is not None,
        }


@dataclass(frozen=True)
class ItemDefinition:
    id: str
    key: str
    name: str
    image_url: Optional[str] = None

    def public(self) -> Dict[str, Any]:
        return {"id": self.id, "key": self.key, "name": self.name, "image_url": self.image_url}


@dataclass(frozen=True)
class Hotspot:
    id: str
    target_id: str
    action: str
    x: float
    y: float
    width: float
    height: float
    meta: Mapping[str, Any] = field(default_factory=dict)
    requires_items: Tuple[str, ...] = ()

    def public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "target_id": self.target_id,
            "action": self.action,
            "x": self.x, "y": self.y, "width": self.width, "height": self.height,
            "label": self.meta.get("label"),
        }


@dataclass(frozen=True)
class RoomDefinition:
    id: str
    title: str
    stages: Tuple[StageDefinition, ...]
    min_team_size: int = 1
    max_team_size: int = 1
    time_limit_seconds: Optional[int] = None
    start_mode: str = "immediate"
    items: Tuple[ItemDefinition, ...] = ()
    hotspots: Tuple[Hotspot, ...] = ()
    source: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def stage_count(self) -> int:
        return len(self.stages)

    def stage(self, index: int) -> StageDefinition:
        return self.stages[index]

    def stage_index(self, stage_id: str) -> Optional[int]:
        for i, st in enumerate(self.stages):
            if st.id == stage_id:
                return i
        return None

    def item_by_id(self, item_id: str) -> Optional[ItemDefinition]:
        for it in self.items:
            if it.id == item_id:
                return it
        return None

    def hotspot(self, hotspot_id: str) -> Optional[Hotspot]:
        for h in self.hotspots:
            if h.id == hotspot_id:
                return h
        return None

    def public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "min_team_size": self.min_team_size,
            "max_team_size": self.max_team_size,
            "time_limit_seconds": self.time_limit_seconds,
            "start_mode": self.start_mode,
            "stage_count": self.stage_count,
            "stages": [st.public() for st in self.stages],
            "items": [it.public() for it in self.items],
            "hotspots": [h.public() for h in self.hotspots],
        }


# ---------------------------------------------------------------------
# Room documents (JSON as authored or as stored)
# ---------------------------------------------------------------------

class _Doc(BaseModel):
    # snake_case or the designer's camelCase keys
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class StageDoc(_Doc):
    id: Optional[str] = None
    order: Optional[StrictInt] = Field(default=None, ge=0)
    title: Optional[str] = None
    puzzle_type: str = Field(default="riddle", alias="puzzleType", min_length=1)
    puzzle_data: Any = Field(default=None, alias="puzzleData")
    correct_answer: Optional[str] = Field(default=None, alias="correctAnswer")
    hints: List[str] = Field(default_factory=list)

    _puzzle: Optional[Puzzle] = PrivateAttr(default=None)

    @field_validator("correct_answer", mode="before")
    @classmethod
    def _numeric_answer(cls, v):
        # codes are often written unquoted
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("hints", mode="before")
    @classmethod
    def _hint_list(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            # legacy rows store hints as a JSON-encoded list
            try:
                return json.loads(v) if v.strip() else []
            except ValueError:
                return [v]
        return v


class ItemDoc(_Doc):
    id: Optional[str] = None
    key: str
    name: Optional[str] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")

    @field_validator("key")
    @classmethod
    def _key_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("item key must not be blank")
        return v


class HotspotDoc(_Doc):
    id: Optional[str] = None
    target_id: str = Field(alias="targetId", min_length=1)
    action: Optional[Literal["pickup", "trigger"]] = None
    x: float = 0
    y: float = 0
    width: float = Field(default=0, ge=0)
    height: float = Field(default=0, ge=0)
    meta: Dict[str, Any] = Field(default_factory=dict)
    requires_items: List[str] = Field(default_factory=list, alias="requiresItems")

    @model_validator(mode="before")
    @classmethod
    def _lift_requirements(cls, data):
        # designers put the item requirements inside meta
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if data.get("meta") is None:
            data["meta"] = {}
        meta = data["meta"]
        if isinstance(meta, dict) and "requires_items" not in data and "requiresItems" not in data:
            for key in ("requires_items", "requiresItems"):
                if key in meta:
                    data["requires_items"] = meta[key]
                    break
        return data


class RoomDoc(_Doc):
    id: str
    title: Optional[str] = None
    min_team_size: StrictInt = Field(default=1, ge=1, alias="minTeamSize")
    max_team_size: Optional[StrictInt] = Field(default=None, alias="maxTeamSize")
    time_limit_seconds: Optional[StrictInt] = Field(default=None, gt=0, alias="timeLimitSeconds")
    start_mode: Literal["immediate", "briefing"] = Field(default="immediate", alias="startMode")
    stages: List[StageDoc] = Field(min_length=1)
    items: List[ItemDoc] = Field(default_factory=list)
    hotspots: List[HotspotDoc] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("room id is required")
        return v

    @field_validator("start_mode", mode="before")
    @classmethod
    def _start_mode_alias(cls, v):
        if v == "leader-start":
            return "briefing"
        return v

    @model_validator(mode="after")
    def _check_room(self) -> "RoomDoc":
        """Cross-field rules; fills in defaults that depend on other fields."""
        problems: List[str] = []

        if self.max_team_size is None:
            self.max_team_size = self.min_team_size
        elif self.max_team_size < self.min_team_size:
            problems.append("max_team_size must be >= min_team_size")

        seen_orders, stage_ids = set(), set()
        for i, st in enumerate(self.stages):
            if st.order is None:
                st.order = i
            if not st.id:
                st.id = f"stage-{st.order}"
            if st.order in seen_orders:
                problems.append(f"duplicate stage order {st.order}")
            seen_orders.add(st.order)
            if st.id in stage_ids:
                problems.append(f"duplicate stage id {st.id!r}")
            stage_ids.add(st.id)
            try:
                st._puzzle = parse_puzzle(st.puzzle_type, st.puzzle_data)
            except (TypeError, ValueError) as e:
                problems.append(f"stages.{i}: puzzle data unreadable: {e}")
                continue
            problems.extend(f"stages.{i}: {p}" for p in st._puzzle.problems())

        item_ids, item_keys = set(), set()
        for it in self.items:
            if not it.id:
                it.id = it.key
            if it.key in item_keys:
                problems.append(f"duplicate item key {it.key!r}")
            item_keys.add(it.key)
            if it.id in item_ids:
                problems.append(f"duplicate item id {it.id!r}")
            item_ids.add(it.id)
        for shared in sorted(stage_ids & item_ids):
            problems.append(f"id {shared!r} is used by both a stage and an item")

        hotspot_ids = set()
        for i, h in enumerate(self.hotspots):
            if not h.id:
                h.id = f"hotspot-{i}"
            if h.id in hotspot_ids:
                problems.append(f"duplicate hotspot id {h.id!r}")
            hotspot_ids.add(h.id)
            if h.target_id in item_ids:
                kind = "item"
            elif h.target_id in stage_ids:
                kind = "stage"
            else:
                problems.append(f"hotspot {h.id!r} targets missing stage or item {h.target_id!r}")
                continue
            if h.action is None:
                h.action = "pickup" if kind == "item" else "trigger"
            if h.action == "pickup" and kind != "item":
                problems.append(f"hotspot {h.id!r} picks up {h.target_id!r}, which is a stage, not an item")
            if h.action == "trigger" and kind != "stage":
                problems.append(f"hotspot {h.id!r} triggers {h.target_id!r}, which is an item, not a stage")
            for key in h.requires_items:
                if key not in item_keys:
                    problems.append(f"hotspot {h.id!r} requires unknown item {key!r}")

        if problems:
            raise PydanticCustomError(
                "room_rules", "{count} room rule(s) broken",
                {"count": len(problems), "problems": problems},
            )
        return self

    def to_definition(self) -> RoomDefinition:
        stages = sorted(self.stages, key=lambda s: s.order)
        return RoomDefinition(
            id=self.id,
            title=self.title or self.id,
            stages=tuple(StageDefinition(
                id=st.id,
                order=st.order,
                title=st.title or f"Stage {st.order + 1}",
                puzzle=st._puzzle,
                correct_answer=normalize_answer(st.correct_answer) or None,
                hints=tuple(st.hints),
            ) for st in stages),
            min_team_size=self.min_team_size,
            max_team_size=self.max_team_size,
            time_limit_seconds=self.time_limit_seconds,
            start_mode=self.start_mode,
            items=tuple(ItemDefinition(id=it.id, key=it.key, name=it.name or it.key, image_url=it.image_url)
                        for it in self.items),
            hotspots=tuple(Hotspot(id=h.id, target_id=h.target_id, action=h.action,
                                   x=h.x, y=h.y, width=h.width, height=h.height,
                                   meta=dict(h.meta), requires_items=tuple(h.requires_items))
                           for h in self.hotspots),
            source=self.model_dump(mode="json"),
        )


def _problem_list(err: ValidationError) -> List[str]:
    out: List[str] = []
    for e in err.errors():
        if e["type"] == "room_rules":
            out.extend(e["ctx"]["problems"])
            continue
        where = ".".join(str(p) for p in e["loc"])
        out.append(f"{where}: {e['msg']}" if where else e["msg"])
    return out


def build_room(payload: Mapping[str, Any]) -> RoomDefinition:
    """Validate a room document and return its definition.

    Field errors are all reported together; the cross-field rules
    (orders, ids, hotspot targets) run once every field is well typed.
    """
    try:
        doc = RoomDoc.model_validate(payload)
    except ValidationError as e:
        raise InvalidRoomDefinition(_problem_list(e)) from None
    return doc.to_definition()
