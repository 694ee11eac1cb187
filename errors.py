class ProtocolError(Exception):
    """Client input error reported back to the requesting connection as `errorMessage`."""

    message = "Protocol error"

    def __init__(self, message: str = None):
        super().__init__(message or self.message)
        if message:
            self.message = message


class RoomRequired(ProtocolError):
    message = "Room required"


class RoomNotFound(ProtocolError):
    message = "Room does not exist"


class UsernameRequired(ProtocolError):
    message = "Username required"


class AlreadyInRoom(ProtocolError):
    message = "Already in a room"


class InvalidPayload(ProtocolError):
    message = "Invalid message payload"


class RoomCodeUnavailable(ProtocolError):
    message = "Could not allocate a room code"
