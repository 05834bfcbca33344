# config.py
import os

DB_URI      = os.getenv("DB_URI", "sqlite:///escape_rooms.db")
SECRET_KEY  = os.getenv("SECRET_KEY", "dev")
PORT        = int(os.getenv("PORT", "5050"))
LOG_LEVEL   = os.getenv("LOG_LEVEL", "INFO").upper()

# "eventlet" in production; tests run with "threading"
SOCKETIO_ASYNC_MODE = os.getenv("SOCKETIO_ASYNC_MODE", "eventlet")
CORS_ORIGINS        = os.getenv("CORS_ORIGINS", "*")

# Rooms imported at startup when set (JSON list or {"rooms": [...]})
ESCAPE_ROOMS_FILE = os.getenv("ESCAPE_ROOMS_FILE", "")

MQTT_URL    = os.getenv("MQTT_URL", "broker.hivemq.com")
MQTT_PORT   = int(os.getenv("MQTT_PORT", "1883"))
MQTT_TLS    = os.getenv("MQTT_TLS", "false").lower() == "true"
MQTT_PREFIX = os.getenv("MQTT_PREFIX", "escape")
MQTT_DISABLED = os.getenv("MQTT_DISABLED", "0").lower() in ("1", "true", "yes")
