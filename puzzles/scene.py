from .base import Puzzle


class ScenePuzzle(Puzzle):
    """
    Designer scene: background plus the items and interactive zones drawn on
    it. Hotspots of the room layout point at stages or items; the scene only
    describes what the client draws.
    """
    puzzle_type = "escape-room-scene"

    def get_prompt(self):
        scene = self.data.get("scene") or {}
        return {
            "type": self.puzzle_type,
            "title": scene.get("name") or self.data.get("title", ""),
            "description": scene.get("description", ""),
            "background": scene.get("backgroundUrl") or scene.get("background"),
            "items": list(self.data.get("items") or []),
            "zones": list(self.data.get("interactiveZones") or []),
        }

    def problems(self):
        out = []
        for key in ("items", "interactiveZones"):
            if key in self.data and not isinstance(self.data[key], list):
                out.append(f"scene {key} must be a list")
        return out
