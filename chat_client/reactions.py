import json
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from chat_client.crypto import encrypt, decrypt

ADD = "add"
REMOVE = "remove"


@dataclass(frozen=True)
class ReactionRecord:
    action: str
    emoji: str
    username: str

    @classmethod
    def from_json(cls, text: str) -> Optional["ReactionRecord"]:
        try:
            raw = json.loads(text)
            return cls(action=str(raw.get("action", ADD)), emoji=str(raw["emoji"]), username=str(raw["username"]))
        except (json.JSONDecodeError, KeyError, AttributeError, TypeError):
            return None

    def to_json(self) -> str:
        return json.dumps({"action": self.action, "emoji": self.emoji, "username": self.username}, ensure_ascii=False)


def seal_reaction(key: bytes, emoji: str, username: str, action: str = ADD) -> dict:
    return encrypt(key, ReactionRecord(action=action, emoji=emoji, username=username).to_json())


def open_history(key: bytes, history: List[dict]) -> List[ReactionRecord]:
    """Decrypt a reaction history in order, dropping entries that do not decrypt or parse."""
    records = []
    for entry in history or []:
        if not isinstance(entry, dict):
            continue
        text = decrypt(key, entry.get("ciphertext"))
        if text is None:
            continue
        record = ReactionRecord.from_json(text)
        if record is not None:
            records.append(record)
    return records


def reduce_reactions(records: List[ReactionRecord]) -> Dict[str, set]:
    """Replay records in order into emoji -> set of usernames. A user counts once per emoji."""
    reacted: Dict[str, set] = {}
    for record in records:
        users = reacted.setdefault(record.emoji, set())
        if record.action == REMOVE:
            users.discard(record.username)
        else:
            users.add(record.username)
    return reacted


def badges(key: bytes, history: List[dict]) -> List[Tuple[str, int]]:
    """(emoji, count) pairs in first-seen order, empty groups omitted."""
    return [(emoji, len(users)) for emoji, users in reduce_reactions(open_history(key, history)).items() if users]


def format_badges(pairs: List[Tuple[str, int]]) -> str:
    return " ".join(f"{emoji} {count}" for emoji, count in pairs)
