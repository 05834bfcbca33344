import json
from typing import Any, Dict, Type

from .base import Puzzle
from .code_lock import CodeLockPuzzle
from .narrative import NarrativePuzzle
from .riddle import RiddlePuzzle
from .scene import ScenePuzzle


class OpaquePuzzle(Puzzle):
    """Unknown ``puzzle_type``: kept as-is and handed to the client untouched."""

    def __init__(self, puzzle_type: str, data: Dict[str, Any]):
        super().__init__(data)
        self.puzzle_type = puzzle_type

    def get_prompt(self):
        out = dict(self.data)
        out["type"] = self.puzzle_type
        return out


PUZZLE_TYPES: Dict[str, Type[Puzzle]] = {
    cls.puzzle_type: cls
    for cls in (RiddlePuzzle, CodeLockPuzzle, ScenePuzzle, NarrativePuzzle)
}


def parse_puzzle(puzzle_type: str, data: Any) -> Puzzle:
    # stored payloads are sometimes a JSON string rather than an object
    if isinstance(data, str):
        try:
            data = json.loads(data) if data.strip() else {}
        except ValueError:
            data = {"text": data}
    if data is None:
        data = {}
    if not isinstance(data, dict):
        data = {"value": data}
    cls = PUZZLE_TYPES.get(puzzle_type)
    if cls is None:
        return OpaquePuzzle(puzzle_type, data)
    return cls(data)
