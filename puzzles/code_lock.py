from .base import Puzzle


class CodeLockPuzzle(Puzzle):
    """
    Combination lock: ``digits`` wheels, each showing symbols from ``alphabet``
    (defaults to 0-9). The client submits the joined combination as the answer.
    """
    puzzle_type = "code_lock"

    def __init__(self, data):
        super().__init__(data)
        self.digits = int(self.data.get("digits", 4))
        self.alphabet = str(self.data.get("alphabet") or "0123456789")

    def get_prompt(self):
        return {
            "type": self.puzzle_type,
            "title": self.data.get("title", "Cadenas"),
            "instruction": self.data.get("instruction", ""),
            "digits": self.digits,
            "alphabet": self.alphabet,
        }

    def problems(self):
        out = []
        if self.digits < 1:
            out.append("code_lock needs at least one digit")
        if len(set(self.alphabet)) != len(self.alphabet):
            out.append("code_lock alphabet has repeated symbols")
        return out
