from abc import ABC, abstractmethod
from typing import Any, Dict, List


class Puzzle(ABC):
    """Presentation payload of a stage, keyed by ``puzzle_type``.

    The progression engine never looks inside: it only forwards
    ``get_prompt()`` to the clients when a stage opens.
    """
    puzzle_type = ""

    def __init__(self, data: Dict[str, Any]):
        self.data = dict(data or {})

    @abstractmethod
    def get_prompt(self) -> Dict[str, Any]:
        ...

    def problems(self) -> List[str]:
        """Shape errors found in ``data`` (empty when usable)."""
        return []

    def to_json(self) -> Dict[str, Any]:
        return dict(self.data)
