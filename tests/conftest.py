"""Shared fixtures: an in-process RouterOS API server and an in-memory gateway."""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from guestnet.config import Config, DeviceConfig
from guestnet.db import Database
from guestnet.errors import ConflictError
from guestnet.models import RemovalOutcome
from guestnet.routeros.codec import WordDecoder, encode_sentence
from guestnet.routeros.login import challenge_response

CHALLENGE = "9a1bc4f2e0d35b6a7c8d9e0f1a2b3c4d"


def _split(words: List[str], prefix: str) -> Dict[str, str]:
    pairs = {}
    for word in words:
        if word.startswith(prefix) and "=" in word[1:]:
            key, value = word[1:].split("=", 1)
            pairs[key] = value
    return pairs


class FakeRouter:
    """Minimal RouterOS API endpoint backed by dictionaries."""

    def __init__(self):
        self.accounts: List[Tuple[str, str]] = [("admin", "secret")]
        self.challenge_mode = False
        self.challenge = CHALLENGE
        self.profiles: Dict[str, Dict[str, str]] = {}
        self.users: Dict[str, Dict[str, str]] = {}
        self.sessions: List[Dict[str, str]] = []
        self.logins: List[Tuple[str, str]] = []
        self.commands: List[List[str]] = []
        self.port: Optional[int] = None
        self._next_id = 1
        self._server = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        self._server.close()
        await self._server.wait_closed()

    def device_config(self, **overrides) -> DeviceConfig:
        settings = dict(
            host="127.0.0.1",
            port=self.port,
            username="admin",
            password="secret",
            connect_timeout=1.0,
            read_timeout=1.0,
            write_timeout=1.0,
        )
        settings.update(overrides)
        return DeviceConfig(**settings)

    def _new_id(self) -> str:
        value = f"*{self._next_id:X}"
        self._next_id += 1
        return value

    async def _handle(self, reader, writer):
        decoder = WordDecoder()
        current: List[str] = []
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                for word in decoder.feed(data):
                    if word:
                        current.append(word)
                        continue
                    sentence, current = current, []
                    self.commands.append(sentence)
                    reply = self.respond(sentence)
                    if reply is None:
                        continue
                    writer.write(reply)
                    await writer.drain()
                    if reply.startswith(b"\x10") or b"!fatal" in reply:
                        return
        except ConnectionError:
            pass
        finally:
            writer.close()

    def respond(self, sentence: List[str]) -> Optional[bytes]:
        command = sentence[0]
        args = _split(sentence[1:], "=")
        queries = _split(sentence[1:], "?")

        def ok(*records: Dict[str, str], ret: Optional[str] = None) -> bytes:
            out = [["!re"] + [f"={k}={v}" for k, v in r.items()] for r in records]
            out.append(["!done"] + ([f"=ret={ret}"] if ret else []))
            return b"".join(encode_sentence(words) for words in out)

        def trap(message: str) -> bytes:
            return encode_sentence(["!trap", f"=message={message}"]) + encode_sentence(["!done"])

        def matching(items):
            return [i for i in items if all(i.get(k) == v for k, v in queries.items())]

        if command == "/login":
            return self._login(args, ok, trap)
        if command == "/hang":
            return None
        if command == "/truncate":
            return b"\x10partial"
        if command == "/quit":
            return encode_sentence(["!fatal", "session terminated on request"])
        if command == "/system/identity/print":
            return ok({"name": "HotelGW"})
        if command == "/system/resource/print":
            return ok({"version": "7.15.3 (stable)", "board-name": "hEX", "uptime": "1d2h", "cpu-load": "3"})
        if command == "/ip/hotspot/user/profile/print":
            return ok(*matching(self.profiles.values()))
        if command == "/ip/hotspot/user/profile/add":
            if args["name"] in self.profiles:
                return trap("failure: already have profile with such name")
            self.profiles[args["name"]] = dict(args, **{".id": self._new_id()})
            return ok(ret=self.profiles[args["name"]][".id"])
        if command == "/ip/hotspot/user/print":
            return ok(*matching(self.users.values()))
        if command == "/ip/hotspot/user/add":
            if args["name"] in self.users:
                return trap("failure: already have user with this name for this server")
            self.users[args["name"]] = dict(args, **{".id": self._new_id()})
            return ok(ret=self.users[args["name"]][".id"])
        if command == "/ip/hotspot/user/remove":
            for name, user in list(self.users.items()):
                if user[".id"] == args[".id"]:
                    del self.users[name]
                    return ok()
            return trap("no such item")
        if command == "/ip/hotspot/active/print":
            return ok(*matching(self.sessions))
        if command == "/ip/hotspot/active/remove":
            before = len(self.sessions)
            self.sessions = [s for s in self.sessions if s[".id"] != args[".id"]]
            return ok() if len(self.sessions) < before else trap("no such item")
        return trap("no such command prefix")

    def _login(self, args, ok, trap) -> bytes:
        name = args.get("name")
        if self.challenge_mode:
            if "response" not in args:
                # Legacy firmware ignores a plain password and issues a challenge
                return ok(ret=self.challenge)
            self.logins.append((name, args.get("response", "")))
            for user, password in self.accounts:
                if user == name and args.get("response") == challenge_response(password, self.challenge):
                    return ok()
            return trap("cannot log in")
        self.logins.append((name, args.get("password", "")))
        if (name, args.get("password", "")) in self.accounts:
            return ok()
        return trap("invalid user name or password (6)")


@pytest_asyncio.fixture
async def router():
    fake = FakeRouter()
    await fake.start()
    yield fake
    await fake.stop()


class FakeGateway:
    """In-memory stand-in for the router-facing gateway."""

    def __init__(self):
        self.users: Dict[str, Dict[str, str]] = {}
        self.profiles: Dict[str, object] = {}
        self.sessions: List[Dict[str, str]] = []
        self.calls: List[Tuple[str, str]] = []
        # Operation name -> list of exceptions raised on successive calls
        self.failures: Dict[str, List[Exception]] = {}
        self.fail_users: Dict[str, Exception] = {}

    def _maybe_fail(self, operation: str, username: Optional[str] = None) -> None:
        self.calls.append((operation, username or ""))
        if username and username in self.fail_users and operation != "create_hotspot_user":
            raise self.fail_users[username]
        queue = self.failures.get(operation)
        if queue:
            raise queue.pop(0)

    async def ensure_profile(self, profile) -> bool:
        self._maybe_fail("ensure_profile")
        created = profile.name not in self.profiles
        self.profiles[profile.name] = profile
        return created

    async def create_hotspot_user(self, username, password, profile, time_limit, comment=None):
        self._maybe_fail("create_hotspot_user", username)
        if username in self.users:
            raise ConflictError(f"Hotspot user {username} already exists")
        self.users[username] = {
            "name": username,
            "password": password,
            "profile": profile,
            "limit-uptime": time_limit,
            "comment": comment or "",
        }
        return f"*{len(self.users)}"

    async def remove_hotspot_user(self, username) -> RemovalOutcome:
        self._maybe_fail("remove_hotspot_user", username)
        if self.users.pop(username, None) is None:
            return RemovalOutcome.NOT_FOUND
        return RemovalOutcome.REMOVED

    async def disconnect_active_session(self, username) -> bool:
        self._maybe_fail("disconnect_active_session", username)
        before = len(self.sessions)
        self.sessions = [s for s in self.sessions if s.get("user") != username]
        return len(self.sessions) < before

    async def list_hotspot_users(self):
        self._maybe_fail("list_hotspot_users")
        return [dict(u) for u in self.users.values()]

    async def list_active_sessions(self):
        self._maybe_fail("list_active_sessions")
        return [dict(s) for s in self.sessions]

    async def get_identity(self):
        self._maybe_fail("get_identity")
        return {"name": "FakeGW"}

    async def get_resource(self):
        self._maybe_fail("get_resource")
        return {"version": "7.15", "board-name": "fake"}


class FakeConnector:
    """Hands out the shared fake gateway; counts sessions."""

    def __init__(self, gateway: FakeGateway):
        self.gateway = gateway
        self.sessions = 0
        self.connect_failures: List[Exception] = []

    @asynccontextmanager
    async def _session(self):
        self.sessions += 1
        if self.connect_failures:
            raise self.connect_failures.pop(0)
        yield self.gateway

    def __call__(self):
        return self._session()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def connector(gateway):
    return FakeConnector(gateway)


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def clock():
    return lambda: datetime(2026, 10, 19, 15, 0, 0)


@pytest_asyncio.fixture
async def store(tmp_path):
    db = Database(str(tmp_path / "guests.db"))
    await db.connect()
    yield db
    await db.close()

