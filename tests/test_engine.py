from datetime import timedelta

import pytest

from conftest import T0, TEAM, room_doc
from services import engine
from services.definitions import build_room
from services.errors import (
    AnswerRequired, BadRequest, BriefingIncomplete, HotspotNotFound, ItemLockHeld,
    MissingItems, NoMoreHints, NotLeader, NotLockHolder, SessionExpired,
    SessionNotActive, SessionNotStarted, StaleSubmission, TeamSizeRejected, UnknownParticipant,
)
from services.session_state import ITEM_LOCK_SECONDS, SessionStatus, create_session


def start(room, team=TEAM):
    session, _ = create_session(room, team, now=T0)
    return session


def at(seconds):
    return T0 + timedelta(seconds=seconds)


def test_create_session(room):
    session, events = create_session(room, TEAM, now=T0)
    assert session.status == SessionStatus.IN_PROGRESS
    assert session.current_stage_index == 0
    assert session.started_at == T0
    assert [e.type for e in events] == ["SessionStarted"]
    assert events[0].sequence == 1
    assert session.leader == "ana"


def test_team_too_small(room):
    with pytest.raises(TeamSizeRejected) as exc:
        create_session(room, ["ana", "ben", "cleo"], now=T0)
    assert exc.value.required == (4, 8)
    assert exc.value.actual == 3


def test_team_members_deduplicated(room):
    with pytest.raises(TeamSizeRejected) as exc:
        create_session(room, ["ana", "ana", "ben", "cleo"], now=T0)
    assert exc.value.actual == 3


def test_correct_answer_advances(room):
    s = start(room)
    s2, events = engine.submit_answer(s, room, 0, " WAREHOUSE ", "ana", now=at(10))
    assert s2.current_stage_index == 1
    assert s2.status == SessionStatus.IN_PROGRESS
    assert [e.type for e in events] == ["StageAdvanced"]
    payload = events[0].payload
    assert payload["stage"]["id"] == "vault"
    assert payload["stage"]["hints_revealed"] == 0
    assert "correct_answer" not in payload["stage"]
    # input untouched
    assert s.current_stage_index == 0 and s.attempts == ()


def test_wrong_answer_only_logs(room):
    s = start(room)
    s2, events = engine.submit_answer(s, room, 0, "garage", "ben", now=at(5))
    assert s2.current_stage_index == 0
    assert len(s2.attempts) == 1
    att = s2.attempts[0]
    assert (att.stage_index, att.submitted_answer, att.correct, att.participant) == (0, "garage", False, "ben")
    assert [e.type for e in events] == ["AnswerRejected"]


def test_last_stage_completes(room):
    s = start(room)
    s, _ = engine.submit_answer(s, room, 0, "warehouse", "ana", now=at(10))
    s, _ = engine.submit_answer(s, room, 1, "4821", "ben", now=at(20))
    s, events = engine.submit_answer(s, room, 2, "", "cleo", now=at(30))
    assert s.status == SessionStatus.COMPLETED
    assert s.completed_at == at(30)
    assert s.current_stage_index == room.stage_count
    assert events[0].type == "RoomCompleted"
    assert events[0].payload["elapsed_seconds"] == 30


def test_golden_key_scenario():
    room = build_room(room_doc(
        stages=[
            {"id": "s0", "order": 0, "correct_answer": "golden_key", "puzzle_type": "narrative"},
            {"id": "s1", "order": 1, "correct_answer": None, "puzzle_type": "narrative"},
        ],
        items=[], hotspots=[],
    ))
    s = start(room)
    s, _ = engine.submit_answer(s, room, 0, "Golden_Key ", "ana", now=at(1))
    assert s.current_stage_index == 1
    s, _ = engine.submit_answer(s, room, 1, "", "dev", now=at(2))
    assert s.status == SessionStatus.COMPLETED


def test_stale_submission_leaves_session_unchanged(room):
    s = start(room)
    with pytest.raises(StaleSubmission) as exc:
        engine.submit_answer(s, room, 1, "4821", "ana", now=at(1))
    assert exc.value.current == 0
    s2, _ = engine.submit_answer(s, room, 0, "warehouse", "ana", now=at(2))
    with pytest.raises(StaleSubmission):
        engine.submit_answer(s2, room, 0, "warehouse", "ben", now=at(3))


def test_outsider_rejected(room):
    s = start(room)
    with pytest.raises(UnknownParticipant):
        engine.submit_answer(s, room, 0, "warehouse", "mallory", now=at(1))


def test_time_limit_checked_before_staleness(room):
    s = start(room)
    with pytest.raises(SessionExpired) as exc:
        engine.submit_answer(s, room, 2, "whatever", "ana", now=at(600))
    timed_out = exc.value.session
    assert timed_out.status == SessionStatus.TIMED_OUT
    assert [e.type for e in exc.value.events] == ["SessionTimedOut"]
    assert timed_out.attempts == ()
    assert s.status == SessionStatus.IN_PROGRESS


def test_untimed_room_never_expires():
    room = build_room(room_doc(time_limit_seconds=None))
    s = start(room)
    s2, _ = engine.submit_answer(s, room, 0, "warehouse", "ana", now=at(10 ** 6))
    assert s2.current_stage_index == 1


def test_hints_revealed_in_order(room):
    s = start(room)
    s, ev1 = engine.request_hint(s, room, 0, now=at(1))
    s, ev2 = engine.request_hint(s, room, 0, now=at(2))
    assert [e.payload["index"] for e in ev1 + ev2] == [1, 2]
    assert ev2[0].payload["text"] == "Starts with W."
    assert s.hints_for(0) == 2
    with pytest.raises(NoMoreHints):
        engine.request_hint(s, room, 0, now=at(3))


def test_hint_counters_keyed_by_stage_order(room):
    s = start(room)
    s, _ = engine.request_hint(s, room, 0, now=at(1))
    s, _ = engine.submit_answer(s, room, 0, "warehouse", "ana", now=at(2))
    s, events = engine.request_hint(s, room, 1, now=at(3))
    assert events[0].payload["index"] == 1
    assert s.hints_revealed == {0: 1, 5: 1}


def test_hint_for_other_stage_is_stale(room):
    s = start(room)
    with pytest.raises(StaleSubmission):
        engine.request_hint(s, room, 1, now=at(1))


def test_abandon_is_idempotent(room):
    s = start(room)
    s2, events = engine.abandon(s, now=at(5))
    assert s2.status == SessionStatus.ABANDONED
    assert [e.type for e in events] == ["SessionAbandoned"]
    s3, events = engine.abandon(s2, now=at(6))
    assert s3 is s2
    assert events == []


def terminal_sessions(room):
    s = start(room)
    s, _ = engine.submit_answer(s, room, 0, "warehouse", "ana", now=at(1))
    s, _ = engine.submit_answer(s, room, 1, "4821", "ana", now=at(2))
    done, _ = engine.submit_answer(s, room, 2, "", "ana", now=at(3))
    timed_out, _ = engine.expire_if_due(start(room), room, now=at(600))
    abandoned, _ = engine.abandon(start(room), now=at(4))
    return {s.status: s for s in (done, timed_out, abandoned)}


@pytest.mark.parametrize("status", [
    SessionStatus.COMPLETED, SessionStatus.TIMED_OUT, SessionStatus.ABANDONED,
])
def test_terminal_sessions_are_frozen(room, status):
    s = terminal_sessions(room)[status]
    idx = s.current_stage_index
    for call in (
        lambda: engine.submit_answer(s, room, idx, "x", "ana", now=at(700)),
        lambda: engine.request_hint(s, room, idx, now=at(700)),
        lambda: engine.use_hotspot(s, room, "hs-key", "ana", now=at(700)),
        lambda: engine.acknowledge_briefing(s, room, "ana", now=at(700)),
        lambda: engine.start_run(s, room, "ana", now=at(700)),
        lambda: engine.acquire_item_lock(s, room, "golden_key", "ana", now=at(700)),
        lambda: engine.release_item_lock(s, room, "golden_key", "ana", now=at(700)),
    ):
        with pytest.raises(SessionNotActive):
            call()
    assert s.status == status


@pytest.mark.parametrize("status", [SessionStatus.COMPLETED, SessionStatus.TIMED_OUT])
def test_finished_sessions_cannot_be_abandoned(room, status):
    s = terminal_sessions(room)[status]
    with pytest.raises(SessionNotActive):
        engine.abandon(s, now=at(700))


def test_sequence_numbers_increase(room):
    s = start(room)
    seqs = []
    for answer in ("nope", "warehouse"):
        s, events = engine.submit_answer(s, room, 0, answer, "ana", now=at(1))
        seqs += [e.sequence for e in events]
    s, events = engine.request_hint(s, room, 1, now=at(2))
    seqs += [e.sequence for e in events]
    assert seqs == [2, 3, 4]


def test_stage_index_never_decreases_over_attempts(room):
    s = start(room)
    for i, answer in enumerate(["x", "warehouse", "y", "4821", ""]):
        s, _ = engine.submit_answer(s, room, s.current_stage_index, answer, TEAM[i % 4], now=at(i))
    idx = [a.stage_index for a in s.attempts]
    assert idx == sorted(idx)
    assert s.status == SessionStatus.COMPLETED


def test_pickup_then_trigger(room):
    s = start(room)
    s, _ = engine.submit_answer(s, room, 0, "warehouse", "ana", now=at(1))
    s, _ = engine.submit_answer(s, room, 1, "4821", "ana", now=at(2))
    with pytest.raises(MissingItems) as exc:
        engine.use_hotspot(s, room, "hs-exit", "ben", now=at(3))
    assert exc.value.missing == ["golden_key"]
    s, events = engine.use_hotspot(s, room, "hs-key", "ben", now=at(4))
    assert s.inventory == ("golden_key",)
    assert events[0].type == "ItemPickedUp"
    again, events = engine.use_hotspot(s, room, "hs-key", "cleo", now=at(5))
    assert again is s and events == []
    s, events = engine.use_hotspot(s, room, "hs-exit", "ben", now=at(6))
    assert s.status == SessionStatus.COMPLETED
    assert s.attempts[-1].submitted_answer == ""


def test_trigger_on_answer_stage_needs_answer(room):
    s = start(room)
    s, _ = engine.submit_answer(s, room, 0, "warehouse", "ana", now=at(1))
    with pytest.raises(AnswerRequired):
        engine.use_hotspot(s, room, "hs-vault", "ana", now=at(2))


def test_trigger_on_future_stage_is_stale(room):
    s = start(room)
    s, _ = engine.use_hotspot(s, room, "hs-key", "ana", now=at(1))
    with pytest.raises(StaleSubmission):
        engine.use_hotspot(s, room, "hs-exit", "ana", now=at(2))


def test_unknown_hotspot(room):
    with pytest.raises(HotspotNotFound):
        engine.use_hotspot(start(room), room, "hs-nope", "ana", now=at(1))


def test_expire_if_due(room):
    s = start(room)
    same, events = engine.expire_if_due(s, room, now=at(599))
    assert same is s and events == []
    expired, events = engine.expire_if_due(s, room, now=at(600))
    assert expired.status == SessionStatus.TIMED_OUT
    assert events[0].type == "SessionTimedOut"


# ---------- briefing ----------

def briefing_room():
    return build_room(room_doc(start_mode="briefing"))


def test_briefing_room_opens_not_started():
    room = briefing_room()
    s, events = create_session(room, TEAM, now=T0, leader="ben")
    assert s.status == SessionStatus.NOT_STARTED
    assert s.started_at is None
    assert s.leader == "ben"
    assert [e.type for e in events] == ["BriefingOpened"]
    assert events[0].payload["required_acks"] == 4
    with pytest.raises(SessionNotStarted):
        engine.submit_answer(s, room, 0, "warehouse", "ana", now=at(1))
    with pytest.raises(SessionNotStarted):
        engine.abandon(s, now=at(1))
    assert s.snapshot(room)["stage"] is None


def test_leader_must_be_on_the_team(room):
    with pytest.raises(UnknownParticipant):
        create_session(room, TEAM, now=T0, leader="mallory")


def test_start_run_waits_for_every_ack():
    room = briefing_room()
    s, _ = create_session(room, TEAM, now=T0)
    for p in TEAM[:3]:
        s, events = engine.acknowledge_briefing(s, room, p, now=at(1))
    assert events[0].payload["acknowledged"] == ["ana", "ben", "cleo"]
    again, events = engine.acknowledge_briefing(s, room, "ana", now=at(2))
    assert again is s and events == []
    with pytest.raises(UnknownParticipant):
        engine.acknowledge_briefing(s, room, "mallory", now=at(2))

    with pytest.raises(BriefingIncomplete) as exc:
        engine.start_run(s, room, "ana", now=at(3))
    assert (exc.value.acknowledged, exc.value.required) == (3, 4)

    s, _ = engine.acknowledge_briefing(s, room, "dev", now=at(4))
    with pytest.raises(NotLeader):
        engine.start_run(s, room, "ben", now=at(5))
    s, events = engine.start_run(s, room, "ana", now=at(10))
    assert s.status == SessionStatus.IN_PROGRESS
    assert s.started_at == at(10)
    assert [e.type for e in events] == ["SessionStarted"]
    same, events = engine.start_run(s, room, "ana", now=at(11))
    assert same is s and events == []


def test_clock_starts_with_the_run():
    room = briefing_room()
    s, _ = create_session(room, TEAM, now=T0)
    for p in TEAM:
        s, _ = engine.acknowledge_briefing(s, room, p, now=at(100))
    s, _ = engine.start_run(s, room, "ana", now=at(300))
    s2, _ = engine.submit_answer(s, room, 0, "warehouse", "ben", now=at(899))
    assert s2.current_stage_index == 1
    with pytest.raises(SessionExpired):
        engine.submit_answer(s, room, 0, "warehouse", "ben", now=at(900))


def test_acks_after_start_change_nothing():
    room = briefing_room()
    s, _ = create_session(room, TEAM, now=T0)
    for p in TEAM:
        s, _ = engine.acknowledge_briefing(s, room, p, now=at(1))
    s, _ = engine.start_run(s, room, "ana", now=at(2))
    same, events = engine.acknowledge_briefing(s, room, "ben", now=at(3))
    assert same is s and events == []


# ---------- item locks ----------

def holding_key(room):
    s = start(room)
    s, _ = engine.use_hotspot(s, room, "hs-key", "cleo", now=at(1))
    return s


def test_item_lock_blocks_other_players(room):
    s = holding_key(room)
    s, events = engine.acquire_item_lock(s, room, "golden_key", "ben", now=at(2))
    assert s.item_locks["golden_key"].holder == "ben"
    assert events[0].type == "ItemLocked"
    assert events[0].payload["holder"] == "ben"
    with pytest.raises(ItemLockHeld) as exc:
        engine.acquire_item_lock(s, room, "golden_key", "cleo", now=at(3))
    assert exc.value.lock.holder == "ben"
    with pytest.raises(NotLockHolder):
        engine.release_item_lock(s, room, "golden_key", "cleo", now=at(3))
    refreshed, _ = engine.acquire_item_lock(s, room, "golden_key", "ben", now=at(60))
    assert refreshed.item_locks["golden_key"].expires_at == at(60 + ITEM_LOCK_SECONDS)


def test_lapsed_lock_can_be_taken_over(room):
    s = holding_key(room)
    s, _ = engine.acquire_item_lock(s, room, "golden_key", "ben", now=at(2))
    s, _ = engine.acquire_item_lock(s, room, "golden_key", "cleo", now=at(2 + ITEM_LOCK_SECONDS))
    assert s.item_locks["golden_key"].holder == "cleo"


def test_leader_can_release_any_lock(room):
    s = holding_key(room)
    s, _ = engine.acquire_item_lock(s, room, "golden_key", "ben", now=at(2))
    s, events = engine.release_item_lock(s, room, "golden_key", "ana", now=at(3))
    assert s.item_locks == {}
    assert events[0].type == "ItemReleased"
    assert events[0].payload == {"item_key": "golden_key", "participant": "ana", "holder": "ben"}
    same, events = engine.release_item_lock(s, room, "golden_key", "ben", now=at(4))
    assert same is s and events == []


def test_only_held_items_can_be_locked(room):
    with pytest.raises(BadRequest):
        engine.acquire_item_lock(start(room), room, "golden_key", "ana", now=at(1))
    with pytest.raises(UnknownParticipant):
        engine.acquire_item_lock(holding_key(room), room, "golden_key", "mallory", now=at(2))
