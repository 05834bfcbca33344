from typing import Any, Dict, List, Optional
from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field
from datetime import datetime, timezone

def utcnow():
    return datetime.now(timezone.utc)

# ------------------ Room definitions ------------------
class EscapeRoom(SQLModel, table=True):
    id: str = Field(primary_key=True)
    title: str = ""
    min_team_size: int = 1
    max_team_size: int = 1
    time_limit_seconds: Optional[int] = None   # None = sans limite
    start_mode: str = "immediate"              # "briefing" = le leader lance le chrono
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

class EscapeStage(SQLModel, table=True):
    pk: Optional[int] = Field(default=None, primary_key=True)
    room_id: str = Field(index=True)
    stage_id: str
    order: int
    title: str = ""
    puzzle_type: str = "riddle"
    puzzle_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    correct_answer: Optional[str] = None       # None = étape sans réponse
    hints: List[str] = Field(default_factory=list, sa_column=Column(JSON))

class ItemDefinition(SQLModel, table=True):
    pk: Optional[int] = Field(default=None, primary_key=True)
    room_id: str = Field(index=True)
    item_id: str
    key: str
    name: str = ""
    image_url: Optional[str] = None

class Hotspot(SQLModel, table=True):
    pk: Optional[int] = Field(default=None, primary_key=True)
    room_id: str = Field(index=True)
    hotspot_id: str
    target_id: str
    action: str = "trigger"
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0
    meta: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

# ------------------ Sessions ------------------
class TeamSession(SQLModel, table=True):
    id: str = Field(primary_key=True)
    room_id: str = Field(index=True)
    team: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    status: str = "not_started"
    current_stage_index: int = 0
    hints_revealed: Dict[str, int] = Field(default_factory=dict, sa_column=Column(JSON))
    attempts: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    inventory: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    item_locks: Dict[str, Dict[str, Any]] = Field(default_factory=dict, sa_column=Column(JSON))
    leader: Optional[str] = None
    briefing_acks: Dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # compare-and-swap: bumped on every save
    version: int = 1
    event_seq: int = 0

    # room document as it was when the run started
    room_snapshot: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    updated_at: datetime = Field(default_factory=utcnow)
