import os

MAX_PARTICIPANTS = int(os.getenv("MAX_PARTICIPANTS", 6))

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "ALLOWED_ORIGINS",
        "http://localhost:8000,http://127.0.0.1:8000,http://localhost:3000",
    ).split(",")
    if origin.strip()
]

# STUN/TURN urls handed to clients, comma separated
ICE_SERVERS = [
    url.strip()
    for url in os.getenv(
        "ICE_SERVERS",
        "stun:stun.l.google.com:19302,stun:stun1.l.google.com:19302,stun:stun2.l.google.com:19302",
    ).split(",")
    if url.strip()
]
TURN_USERNAME = os.getenv("TURN_USERNAME", None)
TURN_CREDENTIAL = os.getenv("TURN_CREDENTIAL", None)

# "memory" delivers inside this process, "redis" goes through Redis pub/sub
BROKER_BACKEND = os.getenv("BROKER_BACKEND", "memory")

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

SERVICE_NAME = "WebRTC Signaling Server"
SERVICE_VERSION = "1.0.0"
