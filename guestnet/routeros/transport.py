"""TCP session with a RouterOS API endpoint."""

import asyncio
import logging
from typing import List, Optional, Tuple

from ..config import DeviceConfig
from ..errors import AuthenticationExhausted, ConnectionLost, FramingError
from .codec import WordDecoder, encode_sentence

logger = logging.getLogger(__name__)


class LoginRejected(Exception):
    """Raised by a login strategy when the router refuses a credential pair."""


class Transport:
    """One TCP connection per logical session.

    ``connect()`` walks the credential candidates until one logs in. Reads
    and writes are bounded by the configured timeouts; any socket failure
    closes the session and surfaces as ``ConnectionLost`` (or
    ``FramingError`` when the stream stops inside a word). Nothing is
    retried here.
    """

    # Common RouterOS defaults, tried when fallback logins are enabled
    DEFAULT_CREDENTIALS = [
        {"username": "admin", "password": ""},
        {"username": "admin", "password": None},  # admin with the configured password
        {"username": "admin", "password": "admin"},
    ]

    READ_CHUNK = 4096

    def __init__(self, config: DeviceConfig, login=None):
        """Initialize the transport.

        Args:
            config: Device connection settings.
            login: Login strategy; defaults to the one named by
                ``config.login_method``.
        """
        self.config = config
        self._login = login
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._decoder = WordDecoder()
        self._connected = False
        self.username: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self._connected and self._writer is not None

    @property
    def login_strategy(self):
        if self._login is None:
            from .login import login_strategy_for
            self._login = login_strategy_for(self.config.login_method)
        return self._login

    async def __aenter__(self) -> "Transport":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    def credential_candidates(self) -> List[Tuple[str, str]]:
        """Build ordered credential attempts with de-duplication."""
        candidates: List[Tuple[str, str]] = []

        def add(username: str, password: str) -> None:
            if (username, password) not in candidates:
                candidates.append((username, password))

        add(self.config.username, self.config.password)

        if self.config.use_fallback_logins:
            for default in self.DEFAULT_CREDENTIALS:
                password = default["password"]
                add(default["username"], self.config.password if password is None else password)

        for alt in self.config.alternate_credentials:
            add(alt.username, alt.password)

        return candidates

    async def connect(self) -> None:
        """Open a session, trying each credential pair on its own socket."""
        if self.is_connected:
            await self.disconnect()

        from .executor import CommandExecutor

        attempted: List[str] = []
        last_error: Optional[str] = None
        saw_rejection = False

        for i, (username, password) in enumerate(self.credential_candidates(), start=1):
            if username not in attempted:
                attempted.append(username)
            logger.debug(f"Login attempt {i} to {self.config.host}:{self.config.port} as {username}")
            try:
                await self._open()
                await self.login_strategy.login(CommandExecutor(self), username, password)
            except LoginRejected as exc:
                saw_rejection = True
                last_error = str(exc)
                logger.debug(f"Login rejected for {username}: {exc}")
                await self.disconnect()
                continue
            except (ConnectionLost, FramingError) as exc:
                last_error = exc.message
                logger.debug(f"Login attempt {i} failed: {exc.message}")
                await self.disconnect()
                continue
            except BaseException:
                await self.disconnect()
                raise

            self.username = username
            if i > 1:
                logger.warning(f"Logged in to {self.config.host} with fallback credentials ({username})")
            else:
                logger.info(f"Connected to RouterOS at {self.config.host}:{self.config.port} as {username}")
            return

        if not saw_rejection:
            raise ConnectionLost(
                f"Router {self.config.host}:{self.config.port} not reachable: {last_error or 'unknown error'}"
            )
        logger.error(f"All login attempts to {self.config.host} failed")
        raise AuthenticationExhausted(attempted, last_error)

    async def _open(self) -> None:
        """Open the TCP socket."""
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.config.host, self.config.port),
                timeout=self.config.connect_timeout,
            )
        except asyncio.TimeoutError:
            raise ConnectionLost(f"Connect to {self.config.host}:{self.config.port} timed out")
        except OSError as exc:
            raise ConnectionLost(f"Connect to {self.config.host}:{self.config.port} failed: {exc}")

        self._decoder = WordDecoder()
        self._connected = True

    async def disconnect(self) -> None:
        """Close the socket. Safe to call repeatedly."""
        writer = self._writer
        self._reader = None
        self._writer = None
        self._connected = False
        self.username = None

        if writer is not None:
            writer.close()
            try:
                await asyncio.wait_for(writer.wait_closed(), timeout=1.0)
            except (OSError, asyncio.TimeoutError):
                pass
            logger.debug(f"Disconnected from {self.config.host}")

    async def write_sentence(self, words: List[str]) -> None:
        """Write one sentence (words plus the zero-length terminator)."""
        if not self.is_connected:
            raise ConnectionLost("Not connected")

        self._writer.write(encode_sentence(words))
        try:
            await asyncio.wait_for(self._writer.drain(), timeout=self.config.write_timeout)
        except asyncio.TimeoutError:
            await self.disconnect()
            raise ConnectionLost(f"Write to {self.config.host} timed out")
        except OSError as exc:
            await self.disconnect()
            raise ConnectionLost(f"Write to {self.config.host} failed: {exc}")

    async def read_words(self) -> List[str]:
        """Perform one bounded socket read and return the words it completed.

        The list may be empty when the read delivered only part of a word.
        """
        if not self.is_connected:
            raise ConnectionLost("Not connected")

        try:
            chunk = await asyncio.wait_for(
                self._reader.read(self.READ_CHUNK),
                timeout=self.config.read_timeout,
            )
        except asyncio.TimeoutError:
            await self._fail_read("timed out")
        except OSError as exc:
            await self._fail_read(str(exc))

        if not chunk:
            await self._fail_read("connection closed by peer")

        try:
            return self._decoder.feed(chunk)
        except FramingError:
            await self.disconnect()
            raise

    async def _fail_read(self, reason: str) -> None:
        partial = self._decoder.has_partial
        await self.disconnect()
        if partial:
            raise FramingError(f"Truncated frame from {self.config.host}: read {reason} mid-word")
        raise ConnectionLost(f"Read from {self.config.host} {reason}")
