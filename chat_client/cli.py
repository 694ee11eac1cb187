"""Terminal client for the EphemeralChat relay.

    python -m chat_client.cli --username alice create
    python -m chat_client.cli --username bob join ROOM01

Inside a room: plain lines are sent as messages, `/react N EMOJI` reacts to the
N-th message, `/unreact N EMOJI` withdraws it, `/leave` leaves the room.
"""
import argparse
import asyncio
import getpass
import os
import sys

from chat_client.constants import RELAY_URL
from chat_client.reactions import REMOVE, format_badges
from chat_client.session import ClientSession, ClientInputError, UiState
from chat_client.transport import RelayConnection
from logging_config import setup_logging, get_logger

logger = get_logger(__name__)


class TerminalView:
    def __init__(self, out=sys.stdout):
        self.out = out
        self.session = None

    def _print(self, text: str):
        print(text, file=self.out, flush=True)

    def __call__(self, kind, payload):
        if kind == "room":
            self._print(f"Room: {payload}")
        elif kind == "system":
            self._print(f"* {payload}")
        elif kind == "count":
            self._print(f"* {payload} online")
        elif kind == "error":
            self._print(f"! {payload}")
        elif kind == "typing" and payload:
            self._print(f"  {payload} typing...")
        elif kind in ("message", "decrypted"):
            self._print(self.render_line(payload))
        elif kind == "reactions":
            self._print(f"  [{self.index_of(payload)}] reactions: {format_badges(payload.reactions)}")

    def index_of(self, line) -> int:
        return list(self.session.lines).index(line.message_id) + 1

    def render_line(self, line) -> str:
        who = "you" if line.own else line.username
        return f"[{self.index_of(line)}] {line.time} {who}: {line.display_text}"


async def read_line(prompt: str = "") -> str:
    loop = asyncio.get_running_loop()
    if prompt:
        print(prompt, end="", flush=True)
    line = await loop.run_in_executor(None, sys.stdin.readline)
    if not line:
        raise EOFError
    return line.rstrip("\n")


async def run_commands(session: ClientSession, view: TerminalView):
    while session.state != UiState.LEFT:
        try:
            line = await read_line()
        except EOFError:
            await session.leave()
            return
        try:
            if line.startswith("/leave") or line.startswith("/quit"):
                await session.leave()
                return
            if line.startswith("/react ") or line.startswith("/unreact "):
                command, index, emoji = (line.split(maxsplit=2) + ["", ""])[:3]
                ids = list(session.lines)
                if not index.isdigit() or not 1 <= int(index) <= len(ids):
                    raise ClientInputError(f"No message {index}")
                action = REMOVE if command == "/unreact" else "add"
                await session.react(ids[int(index) - 1], emoji.strip(), action)
                continue
            await session.send_text(line)
        except ClientInputError as e:
            view("error", str(e))


async def run(args) -> int:
    view = TerminalView()
    password = args.password or getpass.getpass("Room password: ")

    async with RelayConnection(args.url) as connection:
        session = ClientSession(args.username, connection.send, listener=view)
        view.session = session
        listener = asyncio.ensure_future(connection.listen(session))
        try:
            if args.command == "create":
                await session.create_room(password)
            else:
                await session.request_join(args.room, password)
            await run_commands(session, view)
        except ClientInputError as e:
            view("error", str(e))
            return 1
        finally:
            listener.cancel()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chat_client", description="End-to-end encrypted room chat")
    parser.add_argument("--url", default=RELAY_URL, help=f"relay WebSocket URL (default {RELAY_URL})")
    parser.add_argument("--username", "-u", required=True)
    parser.add_argument("--password", help="room password (prompted when omitted)")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "WARNING"))
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("create", help="create a new room")
    join = sub.add_parser("join", help="join an existing room")
    join.add_argument("room")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(log_level=args.log_level)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Client stopped via KeyboardInterrupt")
        return 130


if __name__ == "__main__":
    sys.exit(main())
