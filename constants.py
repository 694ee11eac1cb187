import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

# Sliding expiry for every room key, refreshed on each room mutation
ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", 86400))

# Drop memberships left behind by a previous process. Disable when several relays share one Redis
PURGE_ON_STARTUP = os.getenv("PURGE_ON_STARTUP", "true").lower() in ("1", "true", "yes")

ROOM_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
ROOM_CODE_LENGTH = int(os.getenv("ROOM_CODE_LENGTH", 6))
ROOM_CODE_ATTEMPTS = int(os.getenv("ROOM_CODE_ATTEMPTS", 8))

SALT_BYTES = 16

COLOR_PALETTE = [
    "#5865F2", "#F04747", "#43B581", "#FAA61A", "#7289DA", "#9B59B6",
    "#2ECC71", "#3498DB", "#E67E22", "#E84393", "#00B894", "#D63031",
]

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
