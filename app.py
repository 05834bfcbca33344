import json
import logging

import click
from flask import Flask, jsonify, request
from flask_socketio import SocketIO, join_room, leave_room, emit

import config
from services.broadcaster import Broadcaster, SocketIORelay
from services.errors import BadRequest, EscapeError, InvalidRoomDefinition, SessionExpired
from services.mqtt_bridge import MqttRelay
from services.session_state import channel_for
from services.sessions import SessionService
from services.store import EscapeStore, make_engine

log = logging.getLogger(__name__)

socketio = SocketIO()


# ------------------ HELPERS ------------------
def _service() -> SessionService:
    from flask import current_app
    return current_app.extensions["escape"]


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise BadRequest("JSON object expected")
    return data


def _stage_index(data: dict) -> int:
    raw = data.get("stage_index", data.get("stageIndex"))
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise BadRequest("stage_index is required")
    return raw


def _transition_payload(session, room, events):
    return {
        "session": session.snapshot(room),
        "events": [ev.envelope() for ev in events],
    }


def read_rooms_file(path: str) -> list:
    with open(path, encoding="utf-8") as fh:
        doc = json.load(fh)
    if isinstance(doc, dict):
        doc = doc.get("rooms", [doc])
    return list(doc)


# ------------------ ROUTES ------------------
def register_routes(app: Flask):

    @app.errorhandler(EscapeError)
    def on_escape_error(err: EscapeError):
        body = err.to_dict()
        if isinstance(err, SessionExpired):
            body["session"] = err.session.snapshot()
        return jsonify(body), err.status_code

    @app.get("/api/rooms/<room_id>")
    def room_view(room_id):
        return jsonify(_service().store.load_room(room_id).public())

    @app.post("/api/rooms/<room_id>/sessions")
    def start_session(room_id):
        data = _body()
        team = data.get("team")
        if not isinstance(team, list):
            raise BadRequest("team must be a list of participant ids")
        session, room = _service().start(room_id, team, data.get("leader"))
        return jsonify(session.snapshot(room)), 201

    @app.get("/api/sessions/<session_id>")
    def session_view(session_id):
        return jsonify(_service().get_session_snapshot(session_id))

    @app.post("/api/sessions/<session_id>/answers")
    def submit_answer(session_id):
        data = _body()
        session, room, events = _service().submit_answer(
            session_id, _stage_index(data), data.get("answer"), data.get("participant"))
        out = _transition_payload(session, room, events)
        out["correct"] = bool(events) and events[-1].type != "AnswerRejected"
        return jsonify(out)

    @app.post("/api/sessions/<session_id>/hints")
    def request_hint(session_id):
        data = _body()
        session, room, events = _service().request_hint(
            session_id, _stage_index(data), data.get("participant"))
        out = _transition_payload(session, room, events)
        out["hint"] = events[-1].payload
        return jsonify(out)

    @app.post("/api/sessions/<session_id>/hotspots/<hotspot_id>")
    def use_hotspot(session_id, hotspot_id):
        data = _body()
        session, room, events = _service().use_hotspot(session_id, hotspot_id, data.get("participant"))
        return jsonify(_transition_payload(session, room, events))

    @app.post("/api/sessions/<session_id>/abandon")
    def abandon(session_id):
        session, room, events = _service().abandon(session_id)
        return jsonify(_transition_payload(session, room, events))

    @app.post("/api/sessions/<session_id>/briefing")
    def acknowledge_briefing(session_id):
        session, room, events = _service().acknowledge_briefing(session_id, _body().get("participant"))
        return jsonify(_transition_payload(session, room, events))

    @app.post("/api/sessions/<session_id>/start")
    def start_run(session_id):
        session, room, events = _service().start_run(session_id, _body().get("participant"))
        return jsonify(_transition_payload(session, room, events))

    @app.post("/api/sessions/<session_id>/items/<item_key>/lock")
    def lock_item(session_id, item_key):
        session, room, events = _service().acquire_item_lock(session_id, item_key, _body().get("participant"))
        return jsonify(_transition_payload(session, room, events))

    @app.post("/api/sessions/<session_id>/items/<item_key>/release")
    def release_item(session_id, item_key):
        session, room, events = _service().release_item_lock(session_id, item_key, _body().get("participant"))
        return jsonify(_transition_payload(session, room, events))

    @app.cli.command("load-rooms")
    @click.argument("path", type=click.Path(exists=True, dir_okay=False))
    def load_rooms(path):
        """Import (or replace) room definitions from a JSON file."""
        for doc in read_rooms_file(path):
            try:
                room = _service().store.import_room(doc)
            except InvalidRoomDefinition as e:
                raise click.ClickException(e.message)
            click.echo(f"{room.id}: {room.stage_count} stages")


# ------------------ SOCKETS ------------------
@socketio.on("join")
def on_join(data):
    data = data or {}
    sid = data.get("session_id")
    who = (data.get("participant") or "").strip()
    if not sid:
        emit("join_result", {"ok": False, "error": "session_id is required", "code": "bad_request"})
        return
    try:
        snap = _service().get_session_snapshot(sid)
    except EscapeError as e:
        emit("join_result", {"ok": False, **e.to_dict()})
        return
    if who not in snap["team"]:
        emit("join_result", {"ok": False, "error": "Not part of this team.", "code": "unknown_participant"})
        return
    join_room(channel_for(sid))
    emit("join_result", {"ok": True, "session_id": sid})
    emit("snapshot", snap)


@socketio.on("leave")
def on_leave(data):
    sid = (data or {}).get("session_id")
    if sid:
        leave_room(channel_for(sid))


# ------------------ APP ------------------
def create_app(db_uri=None, async_mode=None, relays=None):
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.SECRET_KEY
    socketio.init_app(app, async_mode=async_mode or config.SOCKETIO_ASYNC_MODE,
                      cors_allowed_origins=config.CORS_ORIGINS)

    if relays is None:
        relays = [SocketIORelay(socketio), MqttRelay()]
    store = EscapeStore(make_engine(db_uri or config.DB_URI))
    app.extensions["escape"] = SessionService(store, Broadcaster(relays))
    register_routes(app)

    if config.ESCAPE_ROOMS_FILE:
        docs = read_rooms_file(config.ESCAPE_ROOMS_FILE)
        for doc in docs:
            store.import_room(doc)
        log.info("[app] %d room(s) imported from %s", len(docs), config.ESCAPE_ROOMS_FILE)
    return app


# ------------------ MAIN ------------------
if __name__ == "__main__":
    app = create_app()
    socketio.run(app, host="0.0.0.0", port=config.PORT)
