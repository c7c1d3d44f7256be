"""Hotspot operations on the router, expressed as RouterOS API commands."""

import asyncio
import functools
import inspect
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

from .config import AccessProfile, DeviceConfig
from .errors import ConflictError, ConnectionLost, DeadlineExceeded, DeviceCommandError, GuestNetError
from .models import RemovalOutcome
from .routeros.executor import CommandExecutor, Sentence
from .routeros.transport import Transport

logger = logging.getLogger(__name__)

T = TypeVar("T")

USER_PATH = "/ip/hotspot/user"
PROFILE_PATH = "/ip/hotspot/user/profile"
ACTIVE_PATH = "/ip/hotspot/active"

_DUPLICATE_MARKERS = ("already have", "already exists")
_MISSING_MARKERS = ("no such item", "not found")


def _is_duplicate(error: DeviceCommandError) -> bool:
    message = error.message.lower()
    return any(marker in message for marker in _DUPLICATE_MARKERS)


def _is_missing(error: DeviceCommandError) -> bool:
    message = error.message.lower()
    return any(marker in message for marker in _MISSING_MARKERS)


def _attributes(records: List[Sentence]) -> List[Dict[str, str]]:
    return [dict(record.attributes) for record in records]


class DeviceGateway:
    """Hotspot user, profile and active-session management."""

    def __init__(self, executor: CommandExecutor):
        self.executor = executor

    async def ensure_profile(self, profile: AccessProfile) -> bool:
        """Create the hotspot user profile unless it already exists.

        Returns:
            True if the profile was created by this call.
        """
        existing = await self.executor.execute(f"{PROFILE_PATH}/print", queries={"name": profile.name})
        if any(r.get("name") == profile.name for r in existing):
            logger.debug(f"Profile {profile.name} already exists")
            return False

        try:
            await self.executor.execute(f"{PROFILE_PATH}/add", {
                "name": profile.name,
                "rate-limit": profile.rate_limit,
                "session-timeout": profile.session_timeout,
                "idle-timeout": profile.idle_timeout,
                "shared-users": profile.shared_users,
            })
        except DeviceCommandError as exc:
            if _is_duplicate(exc):
                logger.debug(f"Profile {profile.name} created concurrently: {exc.message}")
                return False
            raise

        logger.info(f"Created hotspot profile {profile.name} ({profile.rate_limit})")
        return True

    async def create_hotspot_user(
        self,
        username: str,
        password: str,
        profile: str,
        time_limit: str,
        comment: Optional[str] = None,
    ) -> Optional[str]:
        """Add a hotspot user.

        Returns:
            The router's internal ID for the new user, when reported.

        Raises:
            ConflictError: a user with this name already exists.
        """
        args = {
            "name": username,
            "password": password,
            "profile": profile,
            "limit-uptime": time_limit,
        }
        if comment:
            args["comment"] = comment

        try:
            reply = await self.executor.run(f"{USER_PATH}/add", args)
        except DeviceCommandError as exc:
            if _is_duplicate(exc):
                raise ConflictError(f"Hotspot user {username} already exists: {exc.message}") from exc
            raise

        logger.info(f"Created hotspot user {username} (profile={profile}, limit={time_limit})")
        return reply.done.get("ret")

    async def find_hotspot_user(self, username: str) -> Optional[Dict[str, str]]:
        records = await self.executor.execute(f"{USER_PATH}/print", queries={"name": username})
        for attrs in _attributes(records):
            if attrs.get("name") == username:
                return attrs
        return None

    async def remove_hotspot_user(self, username: str) -> RemovalOutcome:
        """Remove a hotspot user by name; a missing user is not an error."""
        user = await self.find_hotspot_user(username)
        if not user:
            logger.info(f"Hotspot user {username} not present on router")
            return RemovalOutcome.NOT_FOUND

        user_id = user.get(".id")
        if not user_id:
            logger.warning(f"Hotspot user {username} listed without an .id; treating as absent")
            return RemovalOutcome.NOT_FOUND

        try:
            await self.executor.execute(f"{USER_PATH}/remove", {".id": user_id})
        except DeviceCommandError as exc:
            if _is_missing(exc):
                return RemovalOutcome.NOT_FOUND
            raise

        logger.info(f"Removed hotspot user {username} ({user_id})")
        return RemovalOutcome.REMOVED

    async def list_hotspot_users(self) -> List[Dict[str, str]]:
        return _attributes(await self.executor.execute(f"{USER_PATH}/print"))

    async def list_active_sessions(self) -> List[Dict[str, str]]:
        return _attributes(await self.executor.execute(f"{ACTIVE_PATH}/print"))

    async def disconnect_active_session(self, username: str) -> bool:
        """Kick every live session of ``username``.

        Returns:
            False if the user had no active session.
        """
        records = await self.executor.execute(f"{ACTIVE_PATH}/print", queries={"user": username})
        session_ids = [r.get(".id") for r in records if r.get("user") == username and r.get(".id")]
        if not session_ids:
            return False

        for session_id in session_ids:
            try:
                await self.executor.execute(f"{ACTIVE_PATH}/remove", {".id": session_id})
            except DeviceCommandError as exc:
                # Session ended between print and remove
                if not _is_missing(exc):
                    raise
        logger.info(f"Disconnected {len(session_ids)} active session(s) for {username}")
        return True

    async def get_identity(self) -> Dict[str, str]:
        records = await self.executor.execute("/system/identity/print")
        return dict(records[0].attributes) if records else {}

    async def get_resource(self) -> Dict[str, str]:
        records = await self.executor.execute("/system/resource/print")
        return dict(records[0].attributes) if records else {}


class LoggingGateway:
    """Wraps a gateway and logs every operation with its duration."""

    def __init__(self, inner: Any, log: logging.Logger = logger):
        self._inner = inner
        self._log = log

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._inner, name)
        if not inspect.iscoroutinefunction(attr):
            return attr

        @functools.wraps(attr)
        async def wrapper(*args, **kwargs):
            start = time.monotonic()
            try:
                result = await attr(*args, **kwargs)
            except GuestNetError as exc:
                elapsed = (time.monotonic() - start) * 1000
                self._log.warning(f"{name} failed after {elapsed:.0f}ms: [{exc.kind}] {exc.message}")
                raise
            elapsed = (time.monotonic() - start) * 1000
            self._log.debug(f"{name} completed in {elapsed:.0f}ms")
            return result

        return wrapper


class DeviceConnector:
    """Opens one router session per logical operation."""

    def __init__(self, config: DeviceConfig, login=None):
        self.config = config
        self.login = login

    @asynccontextmanager
    async def session(self) -> AsyncIterator[DeviceGateway]:
        transport = Transport(self.config, login=self.login)
        try:
            await transport.connect()
            yield LoggingGateway(DeviceGateway(CommandExecutor(transport)))
        finally:
            await transport.disconnect()

    def __call__(self):
        return self.session()


async def run_with_reconnect(
    connector: Callable[[], Any],
    operation: Callable[[Any], Awaitable[T]],
    attempts: int = 2,
    deadline: Optional[float] = None,
    label: str = "device operation",
) -> T:
    """Run ``operation`` against a fresh session, reconnecting on ConnectionLost.

    ``deadline`` bounds the whole sequence of attempts, not a single read.
    The operation must be safe to repeat.
    """

    async def attempt_all() -> T:
        for attempt in range(1, attempts + 1):
            try:
                async with connector() as gateway:
                    return await operation(gateway)
            except DeadlineExceeded:
                raise
            except ConnectionLost as exc:
                if attempt >= attempts:
                    raise
                logger.warning(f"{label}: connection lost ({exc.message}), reconnecting ({attempt}/{attempts})")
        raise ConnectionLost(f"{label}: no attempts made")

    if deadline is None:
        return await attempt_all()

    try:
        return await asyncio.wait_for(attempt_all(), timeout=deadline)
    except asyncio.TimeoutError:
        raise DeadlineExceeded(f"{label} exceeded its {deadline:.0f}s deadline")
