import os

SIGNAL_BACKEND = os.getenv("SIGNAL_BACKEND", "memory")

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

# 0 disables expiry: rooms then live until the host ends them or the process exits
ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", 3600))
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", 60))

SIGNALING_PREFIX = os.getenv("SIGNALING_PREFIX", "/signaling")

ROLES = ("host", "guest")
