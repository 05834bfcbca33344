from .base import Puzzle


class NarrativePuzzle(Puzzle):
    # story-only stage, usually with no answer to check
    puzzle_type = "narrative"

    def get_prompt(self):
        pages = self.data.get("pages")
        if pages is None:
            pages = [self.data.get("text", "")]
        return {
            "type": self.puzzle_type,
            "title": self.data.get("title", ""),
            "pages": list(pages),
        }
