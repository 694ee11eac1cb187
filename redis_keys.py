REDIS_SALT_KEY = "room:salt:{slug}" # room code - base64 salt string
REDIS_COLORS_KEY = "room:colors:{slug}" # room code - hash connection id -> color
REDIS_USERS_KEY = "room:users:{slug}" # room code - set of connection IDs
REDIS_ROOM_REACTIONS_KEY = "room:reactions:{slug}" # room code - set of message ids with reactions
REDIS_REACTIONS_KEY = "reactions:{slug}:{message_id}" # room code + message id - list of json {ciphertext, time}
REDIS_CONN_KEY = "conn:{connection_id}" # connection id - connection metadata

# Every key family the relay writes. Sockets do not survive a restart, so these are purged at startup
RELAY_KEY_PATTERNS = ("room:*", "reactions:*", "conn:*")

# **Example `conn:{connection_id}` hash fields**
# - `username` = display name given at join
# - `room` = room code
# - `color` = palette color
# - `connected_at` = ISO timestamp
