# services/errors.py
from __future__ import annotations
from typing import Any, Dict, List, Sequence, Tuple


class EscapeError(Exception):
    """Base of every failure the engine, store and service raise.

    ``status_code`` is what the HTTP layer answers with, ``code`` is a stable
    machine-readable name the clients switch on.
    """
    status_code = 400
    code = "escape_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


# ---- Validation (400)
class InvalidRoomDefinition(EscapeError):
    code = "invalid_room"

    def __init__(self, problems: Sequence[str]):
        self.problems: List[str] = list(problems)
        super().__init__("Invalid room definition: " + "; ".join(self.problems))

    def to_dict(self):
        d = super().to_dict()
        d["problems"] = self.problems
        return d


class TeamSizeRejected(EscapeError):
    code = "team_size_rejected"

    def __init__(self, required: Tuple[int, int], actual: int):
        self.required = (int(required[0]), int(required[1]))
        self.actual = int(actual)
        super().__init__(
            f"Team size {self.actual} outside required range "
            f"[{self.required[0]}, {self.required[1]}]"
        )

    def to_dict(self):
        d = super().to_dict()
        d["required"] = list(self.required)
        d["actual"] = self.actual
        return d


class AnswerRequired(EscapeError):
    code = "answer_required"

    def __init__(self, stage_index: int):
        self.stage_index = stage_index
        super().__init__(f"Stage {stage_index} must be solved with an answer")


class BadRequest(EscapeError):
    code = "bad_request"


# ---- Not a participant (403)
class UnknownParticipant(EscapeError):
    status_code = 403
    code = "unknown_participant"

    def __init__(self, participant: str):
        self.participant = participant
        super().__init__(f"{participant!r} is not part of this team")


class NotLeader(EscapeError):
    status_code = 403
    code = "not_leader"

    def __init__(self, participant: str):
        self.participant = participant
        super().__init__("Only the team leader can start the run")


class NotLockHolder(EscapeError):
    status_code = 403
    code = "not_lock_holder"

    def __init__(self, item_key: str, holder: str):
        self.item_key = item_key
        self.holder = holder
        super().__init__(f"Only {holder!r} (or the leader) can release {item_key!r}")


# ---- Not found (404)
class RoomNotFound(EscapeError):
    status_code = 404
    code = "room_not_found"

    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__(f"Unknown room {room_id!r}")


class SessionNotFound(EscapeError):
    status_code = 404
    code = "session_not_found"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Unknown session {session_id!r}")


class HotspotNotFound(EscapeError):
    status_code = 404
    code = "hotspot_not_found"

    def __init__(self, hotspot_id: str):
        self.hotspot_id = hotspot_id
        super().__init__(f"Unknown hotspot {hotspot_id!r}")


# ---- Staleness / conflict (409)
class StaleSubmission(EscapeError):
    status_code = 409
    code = "stale_submission"

    def __init__(self, submitted: int, current: int):
        self.submitted = submitted
        self.current = current
        super().__init__(f"Stage {submitted} is not the current stage ({current})")

    def to_dict(self):
        d = super().to_dict()
        d["current_stage_index"] = self.current
        return d


class NoMoreHints(EscapeError):
    status_code = 409
    code = "no_more_hints"

    def __init__(self, stage_index: int):
        self.stage_index = stage_index
        super().__init__(f"All hints for stage {stage_index} are already revealed")


class MissingItems(EscapeError):
    status_code = 409
    code = "missing_items"

    def __init__(self, missing: Sequence[str]):
        self.missing = list(missing)
        super().__init__("Missing required item(s): " + ", ".join(self.missing))

    def to_dict(self):
        d = super().to_dict()
        d["missing"] = self.missing
        return d


class ConcurrentModification(EscapeError):
    status_code = 409
    code = "concurrent_modification"

    def __init__(self, session_id: str, expected_version: int):
        self.session_id = session_id
        self.expected_version = expected_version
        super().__init__(
            f"Session {session_id!r} changed since version {expected_version}"
        )


class SessionNotStarted(EscapeError):
    status_code = 409
    code = "session_not_started"

    def __init__(self):
        super().__init__("Run has not started")


class BriefingIncomplete(EscapeError):
    status_code = 409
    code = "briefing_incomplete"

    def __init__(self, acknowledged: int, required: int):
        self.acknowledged = acknowledged
        self.required = required
        super().__init__(f"All players must acknowledge the briefing ({acknowledged}/{required})")

    def to_dict(self):
        d = super().to_dict()
        d["acknowledged"] = self.acknowledged
        d["required"] = self.required
        return d


class ItemLockHeld(EscapeError):
    status_code = 409
    code = "item_locked"

    def __init__(self, item_key: str, lock):
        self.item_key = item_key
        self.lock = lock
        super().__init__(f"Item {item_key!r} is locked by {lock.holder!r}")

    def to_dict(self):
        d = super().to_dict()
        d["lock"] = self.lock.to_dict()
        return d


# ---- Terminal (410)
class SessionNotActive(EscapeError):
    status_code = 410
    code = "session_not_active"

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Session is {status}")


class SessionExpired(EscapeError):
    """Raised once the time limit passed.

    Carries the TimedOut session and its events: the caller persists and
    broadcasts exactly that, then reports the failure.
    """
    status_code = 410
    code = "session_expired"

    def __init__(self, session, events):
        self.session = session
        self.events = list(events)
        super().__init__("Time limit reached")
