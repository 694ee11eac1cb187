import base64
import re

import pytest

import backend
from constants import COLOR_PALETTE
from errors import RoomNotFound, RoomRequired, RoomCodeUnavailable
from redis_keys import REDIS_REACTIONS_KEY

CODE_PATTERN = re.compile(r"^[A-Z0-9]{6}$")


def test_room_codes_are_six_alphanumerics():
    for _ in range(200):
        assert CODE_PATTERN.match(backend.generate_room_code())


def test_create_room_returns_code_and_16_byte_salt(registry, redis_client):
    code, salt = registry.create_room()
    assert CODE_PATTERN.match(code)
    assert len(base64.b64decode(salt)) == 16
    assert redis_client.get(f"room:salt:{code}") == salt
    assert redis_client.ttl(f"room:salt:{code}") > 0


def test_create_room_regenerates_on_collision(registry, monkeypatch):
    codes = iter(["AAAAAA", "AAAAAA", "BBBBBB"])
    monkeypatch.setattr(backend, "generate_room_code", lambda: next(codes))
    first, _ = registry.create_room()
    second, _ = registry.create_room()
    assert (first, second) == ("AAAAAA", "BBBBBB")


def test_create_room_skips_codes_with_live_members(registry, redis_client, monkeypatch):
    redis_client.sadd("room:users:AAAAAA", "someone")
    codes = iter(["AAAAAA", "CCCCCC"])
    monkeypatch.setattr(backend, "generate_room_code", lambda: next(codes))
    code, _ = registry.create_room()
    assert code == "CCCCCC"


def test_create_room_gives_up_after_attempts(registry, monkeypatch):
    monkeypatch.setattr(backend, "generate_room_code", lambda: "ZZZZZZ")
    registry.create_room()
    with pytest.raises(RoomCodeUnavailable):
        registry.create_room()


def test_salt_requires_live_room(registry, redis_client):
    with pytest.raises(RoomRequired):
        registry.get_or_create_salt("")
    with pytest.raises(RoomNotFound):
        registry.get_or_create_salt("GHOST9")
    assert redis_client.keys("*") == []


def test_salt_is_stable_for_room(registry):
    code, salt = registry.create_room()
    registry.add_member(code, "c1", "alice", registry.assign_color(code, "c1"))
    assert registry.get_or_create_salt(code) == salt
    assert registry.get_or_create_salt(code) == salt


def test_missing_salt_is_created_lazily(registry, redis_client):
    registry.add_member("LAZY01", "c1", "alice", "#5865F2")
    salt = registry.get_or_create_salt("LAZY01")
    assert len(base64.b64decode(salt)) == 16
    assert registry.get_or_create_salt("LAZY01") == salt


def test_colors_unique_until_palette_exhausted(registry):
    code, _ = registry.create_room()
    colors = [registry.assign_color(code, f"c{i}") for i in range(len(COLOR_PALETTE))]
    assert colors == COLOR_PALETTE
    extra = registry.assign_color(code, "overflow")
    assert extra in COLOR_PALETTE


def test_departing_member_releases_color(registry):
    code, _ = registry.create_room()
    for cid in ("c1", "c2"):
        registry.add_member(code, cid, cid, registry.assign_color(code, cid))
    registry.remove_member(code, "c1")
    assert registry.assign_color(code, "c3") == COLOR_PALETTE[0]


def test_membership_count_tracks_set(registry):
    code, _ = registry.create_room()
    assert registry.add_member(code, "c1", "alice", "#5865F2") == 1
    assert registry.add_member(code, "c2", "bob", "#F04747") == 2
    assert registry.member_count(code) == 2
    assert registry.get_connection("c2")["username"] == "bob"
    assert registry.remove_member(code, "c1") == 1
    assert registry.member_count(code) == 1
    assert registry.get_connection("c1") is None


def test_reaction_history_is_append_only(registry):
    code, _ = registry.create_room()
    registry.add_member(code, "c1", "alice", "#5865F2")
    lengths = []
    for n in range(3):
        history = registry.record_reaction(code, "c1-1000", {"iv": f"iv{n}", "cipher": f"ct{n}"})
        lengths.append(len(history))
    assert lengths == [1, 2, 3]
    assert [h["ciphertext"]["iv"] for h in history] == ["iv0", "iv1", "iv2"]
    assert all(isinstance(h["time"], int) for h in history)
    assert registry.get_reactions(code, "c1-1000") == history


def test_last_member_leaving_tears_room_down(registry, redis_client):
    code, _ = registry.create_room()
    registry.add_member(code, "c1", "alice", registry.assign_color(code, "c1"))
    registry.record_reaction(code, "c1-1", {"iv": "a", "cipher": "b"})
    assert redis_client.keys("*")

    assert registry.remove_member(code, "c1") == 0
    assert redis_client.keys("*") == []
    assert not registry.room_exists(code)
    with pytest.raises(RoomNotFound):
        registry.get_or_create_salt(code)


def test_reaction_histories_are_scoped_to_their_room(registry):
    room_a, _ = registry.create_room()
    registry.add_member(room_a, "c1", "alice", "#5865F2")
    room_b, _ = registry.create_room()
    registry.add_member(room_b, "c2", "eve", "#F04747")

    registry.record_reaction(room_a, "c1-1000", {"iv": "a", "cipher": "1"})
    registry.record_reaction(room_b, "c1-1000", {"iv": "b", "cipher": "2"})
    registry.remove_member(room_b, "c2")

    assert [h["ciphertext"]["iv"] for h in registry.get_reactions(room_a, "c1-1000")] == ["a"]
    assert registry.get_reactions(room_b, "c1-1000") == []
    assert len(registry.record_reaction(room_a, "c1-1000", {"iv": "c", "cipher": "3"})) == 2


def test_reaction_ttl_refresh_only_touches_appended_history(registry, redis_client):
    code, _ = registry.create_room()
    registry.add_member(code, "c1", "alice", "#5865F2")
    registry.record_reaction(code, "c1-1", {"iv": "a", "cipher": "b"})
    old_key = REDIS_REACTIONS_KEY.format(slug=code, message_id="c1-1")
    redis_client.expire(old_key, 5)

    registry.record_reaction(code, "c1-2", {"iv": "c", "cipher": "d"})
    registry.add_member(code, "c2", "bob", "#F04747")

    assert 0 < redis_client.ttl(old_key) <= 5
    assert redis_client.ttl(REDIS_REACTIONS_KEY.format(slug=code, message_id="c1-2")) > 5


def test_purge_drops_orphaned_rooms(registry, redis_client):
    code, _ = registry.create_room()
    registry.add_member(code, "ghost", "alice", registry.assign_color(code, "ghost"))
    registry.record_reaction(code, "ghost-1", {"iv": "a", "cipher": "b"})
    redis_client.set("unrelated", "kept")

    assert registry.purge() > 0
    assert redis_client.keys("*") == ["unrelated"]
    assert not registry.room_exists(code)
