# services/mqtt_bridge.py
import json
import logging
import ssl

import paho.mqtt.client as mqtt

import config

log = logging.getLogger(__name__)

_client = None
_failed = False


def _ensure():
    global _client, _failed
    if config.MQTT_DISABLED or _failed:
        return None
    if _client:
        return _client
    try:
        c = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        if config.MQTT_TLS:
            c.tls_set(cert_reqs=ssl.CERT_REQUIRED)
            port = 8883
        else:
            port = config.MQTT_PORT
        c.connect(config.MQTT_URL, port, keepalive=60)
        c.loop_start()
        _client = c
        return _client
    except (OSError, ValueError) as e:
        _failed = True
        log.warning("[MQTT] disabled: %s", e)
        return None


def _pub(topic: str, payload: dict):
    c = _ensure()
    if not c:
        return
    info = c.publish(topic, json.dumps(payload), qos=1)
    if info.rc != mqtt.MQTT_ERR_SUCCESS:
        raise ConnectionError(f"publish to {topic} failed (rc={info.rc})")


def led(session_id: str, on: bool):
    _pub(f"{config.MQTT_PREFIX}/{session_id}/led", {"on": bool(on)})


def buzzer(session_id: str, ms: int = 300):
    _pub(f"{config.MQTT_PREFIX}/{session_id}/buzzer", {"beep_ms": int(ms)})


def chrono_color(session_id: str, color: str):
    if color not in {"green", "yellow", "red", "off"}:
        color = "off"
    _pub(f"{config.MQTT_PREFIX}/{session_id}/chrono", {"color": color})


# Room hardware reaction per event type
_FEEDBACK = {
    "StageAdvanced":    lambda sid: (led(sid, True), buzzer(sid, 120)),
    "AnswerRejected":   lambda sid: buzzer(sid, 300),
    "RoomCompleted":    lambda sid: (led(sid, True), buzzer(sid, 600), chrono_color(sid, "off")),
    "SessionTimedOut":  lambda sid: (buzzer(sid, 1000), chrono_color(sid, "red")),
    "SessionAbandoned": lambda sid: (led(sid, False), chrono_color(sid, "off")),
    "SessionStarted":   lambda sid: chrono_color(sid, "green"),
    "BriefingOpened":   lambda sid: chrono_color(sid, "yellow"),
}


class MqttRelay:
    """Relay publishing every event to ``<prefix>/<session>/events``."""
    name = "mqtt"

    def publish(self, event):
        _pub(f"{config.MQTT_PREFIX}/{event.session_id}/events", event.envelope())
        react = _FEEDBACK.get(event.type)
        if react:
            react(event.session_id)
