import os

RELAY_URL = os.getenv("RELAY_URL", "ws://localhost:8000/ws")

PBKDF2_ITERATIONS = 200000
KEY_BYTES = 32
NONCE_BYTES = 12

TYPING_DEBOUNCE_SECONDS = 1.2

UNABLE_TO_DECRYPT = "🔒 Unable to decrypt"
AWAITING_KEY = "🔒 Encrypted — enter password"
