from .base import Puzzle


class RiddlePuzzle(Puzzle):
    """
    Free-text riddle. The data carries the riddle text and an optional image;
    the expected answer lives on the stage, never in the payload.
    """
    puzzle_type = "riddle"

    def get_prompt(self):
        return {
            "type": self.puzzle_type,
            "title": self.data.get("title", ""),
            "instruction": self.data.get("text", ""),
            "image": self.data.get("image"),
        }

    def problems(self):
        if not (self.data.get("text") or "").strip():
            return ["riddle without text"]
        return []
