import asyncio
from functools import partial

import pytest

from backend import generate_salt
from chat_client.constants import AWAITING_KEY, UNABLE_TO_DECRYPT
from chat_client.crypto import derive_room_key, encrypt, decrypt
from chat_client.reactions import seal_reaction
from chat_client.session import ClientSession, ClientInputError, UiState

fast_derive = partial(derive_room_key, iterations=1000)


class Outbox:
    def __init__(self):
        self.frames = []

    async def __call__(self, event, data=None):
        self.frames.append((event, data))

    def events(self):
        return [event for event, _ in self.frames]


def make_session(username="bob", **kwargs):
    outbox = Outbox()
    seen = []
    session = ClientSession(username, outbox, listener=lambda kind, payload: seen.append(kind),
                            derive=fast_derive, **kwargs)
    return session, outbox, seen


def envelope(key, text, username="alice", message_id="abc-1"):
    return {"username": username, "encrypted": encrypt(key, text), "time": "12:00", "messageId": message_id}


def run(coro):
    return asyncio.run(coro)


async def join(session, salt, password="pw", room="ROOM01"):
    await session.request_join(room, password)
    await session.handle("roomSalt", {"room": room, "salt": salt})
    await session.handle("systemMessage", f"Joined room {room}")


@pytest.fixture
def salt():
    return generate_salt()


def test_join_flow_requests_salt_then_joins(salt):
    session, outbox, _ = make_session()

    async def scenario():
        await session.request_join(" room01 ", "hunter2")
        assert session.state == UiState.AWAITING_SALT
        await session.handle("roomSalt", {"room": "ROOM01", "salt": salt})
        assert session.state == UiState.JOINING
        await session.handle("systemMessage", "Joined room ROOM01")

    run(scenario())
    assert outbox.frames == [
        ("getSalt", {"room": "ROOM01"}),
        ("joinRoom", {"username": "bob", "room": "ROOM01"}),
    ]
    assert session.state == UiState.CHAT
    assert session.key == fast_derive("hunter2", salt)
    assert session._password is None


def test_creator_does_not_send_join(salt):
    session, outbox, _ = make_session("alice")

    async def scenario():
        await session.create_room("hunter2")
        await session.handle("roomCreated", "ROOM01")
        await session.handle("roomSalt", {"room": "ROOM01", "salt": salt})

    run(scenario())
    assert outbox.frames == [("createRoom", "alice")]
    assert session.room == "ROOM01"
    assert session.state == UiState.CHAT


def test_input_validation():
    session, outbox, _ = make_session()
    with pytest.raises(ClientInputError):
        run(session.create_room("  "))
    with pytest.raises(ClientInputError):
        run(session.request_join("", "pw"))
    with pytest.raises(ClientInputError):
        run(session.request_join("ROOM01", ""))
    with pytest.raises(ClientInputError):
        run(session.send_text("hello"))
    assert outbox.frames == []
    assert session.state == UiState.LOBBY


def test_messages_before_key_are_queued_then_decrypted(salt):
    session, _, seen = make_session()
    key = fast_derive("hunter2", salt)

    async def scenario():
        await session.request_join("ROOM01", "hunter2")
        await session.handle("chatMessage", envelope(key, "early bird"))
        line = session.lines["abc-1"]
        assert line.display_text == AWAITING_KEY
        assert "abc-1" in session.pending
        await session.handle("roomSalt", {"room": "ROOM01", "salt": salt})

    run(scenario())
    assert session.pending == {}
    assert session.lines["abc-1"].display_text == "early bird"
    assert "decrypted" in seen


def test_wrong_password_renders_placeholder(salt):
    session, _, _ = make_session()
    key = fast_derive("right", salt)

    async def scenario():
        await session.request_join("ROOM01", "wrong")
        await session.handle("roomSalt", {"room": "ROOM01", "salt": salt})
        await session.handle("chatMessage", envelope(key, "secret"))

    run(scenario())
    assert session.lines["abc-1"].text is None
    assert session.lines["abc-1"].display_text == UNABLE_TO_DECRYPT


def test_send_text_encrypts_and_stops_typing(salt):
    session, outbox, _ = make_session()

    async def scenario():
        await join(session, salt)
        assert await session.send_text("  ") is False
        assert await session.send_text("hello") is True

    run(scenario())
    assert outbox.events()[-2:] == ["chatMessage", "stopTyping"]
    payload = outbox.frames[-2][1]
    assert decrypt(session.key, payload) == "hello"


def test_ack_marks_line_delivered_in_either_order(salt):
    session, _, _ = make_session("alice")
    key = fast_derive("pw", salt)

    async def scenario():
        await session.create_room("pw")
        await session.handle("roomSalt", {"room": "ROOM01", "salt": salt})
        await session.handle("messageSent", {"messageId": "m-1"})
        await session.handle("chatMessage", envelope(key, "one", message_id="m-1"))
        await session.handle("chatMessage", envelope(key, "two", message_id="m-2"))
        assert not session.lines["m-2"].delivered
        await session.handle("messageSent", {"messageId": "m-2"})

    run(scenario())
    assert session.lines["m-1"].delivered and session.lines["m-1"].own
    assert session.lines["m-2"].delivered


def test_reaction_update_builds_badges(salt):
    session, outbox, _ = make_session()
    key = fast_derive("pw", salt)

    async def scenario():
        await session.request_join("ROOM01", "pw")
        await session.handle("roomSalt", {"room": "ROOM01", "salt": salt})
        await session.handle("chatMessage", envelope(key, "hi"))
        await session.react("abc-1", "😀")
        history = [
            {"ciphertext": seal_reaction(key, "😀", "alice"), "time": 1},
            {"ciphertext": outbox.frames[-1][1]["encryptedCipher"], "time": 2},
        ]
        await session.handle("reactionUpdate", {"messageId": "abc-1", "history": history})

    run(scenario())
    event, data = outbox.frames[-1]
    assert event == "addReactionEncrypted"
    assert data["messageId"] == "abc-1"
    assert session.lines["abc-1"].reactions == [("😀", 2)]


def test_reactions_before_key_are_applied_after_derivation(salt):
    session, _, _ = make_session()
    key = fast_derive("pw", salt)
    history = [{"ciphertext": seal_reaction(key, "🔥", "alice"), "time": 1}]

    async def scenario():
        await session.request_join("ROOM01", "pw")
        await session.handle("chatMessage", envelope(key, "hi"))
        await session.handle("reactionUpdate", {"messageId": "abc-1", "history": history})
        assert session.lines["abc-1"].reactions == []
        await session.handle("roomSalt", {"room": "ROOM01", "salt": salt})

    run(scenario())
    assert session.lines["abc-1"].reactions == [("🔥", 1)]


def test_error_while_waiting_for_salt_returns_to_lobby():
    session, _, seen = make_session()

    async def scenario():
        await session.request_join("GHOST9", "pw")
        await session.handle("errorMessage", "Room does not exist")

    run(scenario())
    assert session.state == UiState.LOBBY
    assert session.errors == ["Room does not exist"]
    assert "error" in seen


def test_typing_is_debounced(salt):
    session, outbox, _ = make_session(typing_debounce=0.05)

    async def scenario():
        await join(session, salt)
        outbox.frames.clear()
        await session.keystroke()
        await asyncio.sleep(0.01)
        await session.keystroke()
        await asyncio.sleep(0.2)

    run(scenario())
    assert outbox.events() == ["typing", "typing", "stopTyping"]


def test_incoming_room_events_update_state():
    session, _, _ = make_session()

    async def scenario():
        await session.handle("systemMessage", "alice joined")
        await session.handle("userCountUpdate", 2)
        await session.handle("typing", "alice")
        assert session.typing_user == "alice"
        await session.handle("stopTyping", "alice")
        await session.handle("somethingNew", {})

    run(scenario())
    assert session.system_messages == ["alice joined"]
    assert session.user_count == 2
    assert session.typing_user is None


def test_leave_sends_leave_room(salt):
    session, outbox, _ = make_session()

    async def scenario():
        await join(session, salt)
        await session.leave()

    run(scenario())
    assert outbox.events()[-1] == "leaveRoom"
    assert session.state == UiState.LEFT


def test_join_rejected_after_salt_returns_to_lobby(salt):
    session, outbox, _ = make_session()

    async def scenario():
        await session.request_join("ROOM01", "pw")
        await session.handle("roomSalt", {"room": "ROOM01", "salt": salt})
        assert session.state == UiState.JOINING
        with pytest.raises(ClientInputError):
            await session.send_text("too early")
        await session.handle("errorMessage", "Room does not exist")

    run(scenario())
    assert session.state == UiState.LOBBY
    assert session.key is None and session.room is None
    assert "chatMessage" not in outbox.events()
    with pytest.raises(ClientInputError):
        run(session.send_text("hello?"))


def test_other_system_messages_do_not_confirm_join(salt):
    session, _, _ = make_session()

    async def scenario():
        await session.request_join("ROOM01", "pw")
        await session.handle("roomSalt", {"room": "ROOM01", "salt": salt})
        await session.handle("systemMessage", "Joined room OTHER1")
        assert session.state == UiState.JOINING
        await session.handle("systemMessage", "Joined room ROOM01")

    run(scenario())
    assert session.state == UiState.CHAT
