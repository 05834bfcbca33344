from datetime import datetime, timedelta, timezone

import pytest

from services.definitions import build_room
from services.store import EscapeStore, make_engine

T0 = datetime(2025, 7, 24, 9, 0, tzinfo=timezone.utc)


def room_doc(**over):
    doc = {
        "id": "warehouse",
        "title": "The Warehouse",
        "min_team_size": 4,
        "max_team_size": 8,
        "time_limit_seconds": 600,
        "stages": [
            {"id": "gate", "order": 0, "puzzle_type": "riddle",
             "puzzle_data": {"text": "Where do the crates sleep?"},
             "correct_answer": "warehouse", "hints": ["Big building.", "Starts with W."]},
            {"id": "vault", "order": 5, "puzzle_type": "code_lock",
             "puzzle_data": {"digits": 4}, "correct_answer": "4821", "hints": ["Look at the clock."]},
            {"id": "exit", "order": 9, "puzzle_type": "narrative",
             "puzzle_data": {"text": "The door swings open."}, "correct_answer": None},
        ],
        "items": [{"id": "key-item", "key": "golden_key", "name": "Golden key"}],
        "hotspots": [
            {"id": "hs-key", "target_id": "key-item", "action": "pickup", "x": 1, "y": 2, "width": 10, "height": 10},
            {"id": "hs-exit", "target_id": "exit", "action": "trigger", "x": 50, "y": 0, "width": 20, "height": 40,
             "meta": {"requires_items": ["golden_key"]}},
            {"id": "hs-vault", "target_id": "vault", "action": "trigger", "x": 80, "y": 0, "width": 5, "height": 5},
        ],
    }
    doc.update(over)
    return doc


TEAM = ["ana", "ben", "cleo", "dev"]


class Clock:
    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def room():
    return build_room(room_doc())


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store(tmp_path):
    st = EscapeStore(make_engine(f"sqlite:///{tmp_path / 'escape.db'}"))
    st.import_room(room_doc())
    return st
