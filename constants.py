import os
import uuid

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# "memory" keeps the registry in-process (single instance); "redis" shares it
REGISTRY_BACKEND = os.getenv("REGISTRY_BACKEND", "memory")

# Identifies this gateway process when connections are spread over instances
INSTANCE_ID = os.getenv("INSTANCE_ID", uuid.uuid4().hex[:12])

DEFAULT_STUN_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:global.stun.twilio.com:3478",
]


def parse_stun_servers(value):
    if not value:
        return list(DEFAULT_STUN_SERVERS)
    return [url.strip() for url in value.split(",") if url.strip()]


STUN_SERVERS = parse_stun_servers(os.getenv("STUN_SERVERS"))

SIGNALING_URL = os.getenv("SIGNALING_URL", "ws://localhost:8000/ws")
RECONNECT_INITIAL_DELAY = float(os.getenv("RECONNECT_INITIAL_DELAY", 0.5))
RECONNECT_MAX_DELAY = float(os.getenv("RECONNECT_MAX_DELAY", 10))

# Capture devices for aiortc's MediaPlayer, e.g. "/dev/video0" + "v4l2", "default" + "pulse"
CAPTURE_VIDEO_DEVICE = os.getenv("CAPTURE_VIDEO_DEVICE", None)
CAPTURE_VIDEO_FORMAT = os.getenv("CAPTURE_VIDEO_FORMAT", None)
CAPTURE_AUDIO_DEVICE = os.getenv("CAPTURE_AUDIO_DEVICE", None)
CAPTURE_AUDIO_FORMAT = os.getenv("CAPTURE_AUDIO_FORMAT", None)
