import base64
import json
import random
import secrets
import time
from datetime import datetime
from typing import Optional

import redis

from constants import (
    REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, REDIS_DB, ROOM_TTL_SECONDS,
    ROOM_CODE_ALPHABET, ROOM_CODE_LENGTH, ROOM_CODE_ATTEMPTS, SALT_BYTES, COLOR_PALETTE,
)
from errors import RoomRequired, RoomNotFound, RoomCodeUnavailable
from redis_keys import (
    REDIS_SALT_KEY, REDIS_COLORS_KEY, REDIS_USERS_KEY, REDIS_ROOM_REACTIONS_KEY,
    REDIS_REACTIONS_KEY, REDIS_CONN_KEY, RELAY_KEY_PATTERNS,
)
from logging_config import get_logger

logger = get_logger(__name__)


def create_redis_client() -> redis.Redis:
    logger.info(f"Creating Redis client for {REDIS_HOST}:{REDIS_PORT} db={REDIS_DB}")
    return redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, db=REDIS_DB, decode_responses=True)


def generate_room_code(length: int = ROOM_CODE_LENGTH) -> str:
    # Codes are public identifiers, a non-cryptographic source is enough
    return ''.join(random.choices(ROOM_CODE_ALPHABET, k=length))


def generate_salt() -> str:
    return base64.b64encode(secrets.token_bytes(SALT_BYTES)).decode("ascii")


def epoch_millis() -> int:
    return int(time.time() * 1000)


class RoomRegistry:
    """Ephemeral room store: salts, member colors, membership sets and reaction histories.

    Every room key carries a sliding TTL refreshed on mutation, and a room's keys are
    deleted as soon as its last member leaves. Callers never touch Redis directly.
    """

    def __init__(self, redis_client: redis.Redis, ttl: int = ROOM_TTL_SECONDS):
        self.redis_client = redis_client
        self.ttl = ttl
        logger.info(f"Initializing RoomRegistry with TTL {ttl} seconds")

    def ping(self) -> bool:
        return bool(self.redis_client.ping())

    def _room_keys(self, code: str) -> list:
        return [
            REDIS_SALT_KEY.format(slug=code),
            REDIS_COLORS_KEY.format(slug=code),
            REDIS_USERS_KEY.format(slug=code),
            REDIS_ROOM_REACTIONS_KEY.format(slug=code),
        ]

    def touch_room(self, code: str, *extra_keys: str):
        """Refresh the expiry on a room's fixed keys plus any extra keys just written."""
        if not self.ttl:
            return
        pipe = self.redis_client.pipeline()
        for key in self._room_keys(code) + list(extra_keys):
            pipe.expire(key, self.ttl)
        pipe.execute()

    def purge(self) -> int:
        """Delete every key the relay owns. Run at startup, when no member can still be connected."""
        deleted = 0
        for pattern in RELAY_KEY_PATTERNS:
            keys = list(self.redis_client.scan_iter(match=pattern, count=500))
            if keys:
                deleted += self.redis_client.delete(*keys)
        logger.info(f"Purged {deleted} stale relay keys")
        return deleted

    def create_room(self):
        """Allocate a fresh room code and salt. Returns (code, salt)."""
        for attempt in range(1, ROOM_CODE_ATTEMPTS + 1):
            code = generate_room_code()
            if self.redis_client.exists(REDIS_USERS_KEY.format(slug=code)):
                logger.warning(f"Room code {code} collides with a live room (attempt {attempt})")
                continue
            salt = generate_salt()
            # SET NX claims the code atomically
            if self.redis_client.set(REDIS_SALT_KEY.format(slug=code), salt, nx=True, ex=self.ttl or None):
                logger.info(f"Room {code} created")
                return code, salt
            logger.warning(f"Room code {code} already has a salt (attempt {attempt})")
        logger.error(f"Could not allocate a room code after {ROOM_CODE_ATTEMPTS} attempts")
        raise RoomCodeUnavailable()

    def room_exists(self, code: str) -> bool:
        if not code:
            return False
        return self.member_count(code) > 0

    def get_or_create_salt(self, code: str) -> str:
        if not code:
            raise RoomRequired()
        if not self.room_exists(code):
            logger.debug(f"Salt requested for missing room {code}")
            raise RoomNotFound()
        key = REDIS_SALT_KEY.format(slug=code)
        salt = self.redis_client.get(key)
        if salt is None:
            logger.warning(f"Room {code} has members but no salt, generating one")
            self.redis_client.set(key, generate_salt(), nx=True, ex=self.ttl or None)
            salt = self.redis_client.get(key)
        return salt

    def assign_color(self, code: str, connection_id: str) -> str:
        colors_key = REDIS_COLORS_KEY.format(slug=code)
        used = set(self.redis_client.hvals(colors_key))
        color = next((c for c in COLOR_PALETTE if c not in used), None)
        if color is None:
            color = random.choice(COLOR_PALETTE)
        self.redis_client.hset(colors_key, connection_id, color)
        if self.ttl:
            self.redis_client.expire(colors_key, self.ttl)
        logger.debug(f"Assigned color {color} to {connection_id} in room {code}")
        return color

    def add_member(self, code: str, connection_id: str, username: str, color: str) -> int:
        """Add a connection to a room's membership set and store its metadata. Returns the member count."""
        users_key = REDIS_USERS_KEY.format(slug=code)
        conn_key = REDIS_CONN_KEY.format(connection_id=connection_id)
        pipe = self.redis_client.pipeline()
        pipe.sadd(users_key, connection_id)
        pipe.hset(conn_key, mapping={
            "username": username,
            "room": code,
            "color": color,
            "connected_at": datetime.now().isoformat(),
        })
        if self.ttl:
            pipe.expire(conn_key, self.ttl)
        pipe.scard(users_key)
        count = pipe.execute()[-1]
        self.touch_room(code)
        logger.debug(f"Connection {connection_id} added to room {code}, {count} members")
        return count

    def remove_member(self, code: str, connection_id: str) -> int:
        """Remove a connection from a room, releasing its color. Tears the room down when it empties."""
        users_key = REDIS_USERS_KEY.format(slug=code)
        pipe = self.redis_client.pipeline()
        pipe.srem(users_key, connection_id)
        pipe.hdel(REDIS_COLORS_KEY.format(slug=code), connection_id)
        pipe.delete(REDIS_CONN_KEY.format(connection_id=connection_id))
        pipe.scard(users_key)
        remaining = pipe.execute()[-1]
        logger.debug(f"Connection {connection_id} removed from room {code}, {remaining} remaining")
        if remaining == 0:
            self.teardown_room(code)
        return remaining

    def teardown_room(self, code: str):
        reactions_index = REDIS_ROOM_REACTIONS_KEY.format(slug=code)
        message_ids = self.redis_client.smembers(reactions_index)
        keys = self._room_keys(code) + [REDIS_REACTIONS_KEY.format(slug=code, message_id=m) for m in message_ids]
        deleted = self.redis_client.delete(*keys)
        logger.info(f"Room {code} torn down, {deleted} keys deleted ({len(message_ids)} reaction histories)")

    def member_count(self, code: str) -> int:
        return self.redis_client.scard(REDIS_USERS_KEY.format(slug=code))

    def get_connection(self, connection_id: str) -> Optional[dict]:
        data = self.redis_client.hgetall(REDIS_CONN_KEY.format(connection_id=connection_id))
        return data or None

    def record_reaction(self, code: str, message_id: str, ciphertext: dict) -> list:
        """Append an opaque reaction ciphertext to a message's history and return the whole history."""
        key = REDIS_REACTIONS_KEY.format(slug=code, message_id=message_id)
        entry = {"ciphertext": ciphertext, "time": epoch_millis()}
        pipe = self.redis_client.pipeline()
        pipe.rpush(key, json.dumps(entry))
        pipe.sadd(REDIS_ROOM_REACTIONS_KEY.format(slug=code), message_id)
        length = pipe.execute()[0]
        self.touch_room(code, key)
        logger.debug(f"Reaction recorded for message {message_id} in room {code}, history length {length}")
        return self.get_reactions(code, message_id)

    def get_reactions(self, code: str, message_id: str) -> list:
        key = REDIS_REACTIONS_KEY.format(slug=code, message_id=message_id)
        history = []
        for raw in self.redis_client.lrange(key, 0, -1):
            try:
                history.append(json.loads(raw))
            except json.JSONDecodeError:
                logger.error(f"Corrupt reaction entry for message {message_id}")
        return history
