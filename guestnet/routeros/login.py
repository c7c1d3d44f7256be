"""Pluggable RouterOS API login strategies.

RouterOS 6.43 and later accept the password in the ``/login`` sentence.
Older firmware answers ``/login`` with a challenge and expects an MD5
response. The router does not advertise which one it wants, so the method
is chosen by configuration rather than detected.
"""

import hashlib
import logging
from abc import ABC, abstractmethod

from ..errors import DeviceCommandError
from .transport import LoginRejected

logger = logging.getLogger(__name__)


class LoginStrategy(ABC):
    """Authenticates an open transport."""

    name = ""

    @abstractmethod
    async def login(self, executor, username: str, password: str) -> None:
        """Log in or raise ``LoginRejected``."""


class PlainLogin(LoginStrategy):
    """Post-6.43 login: name and password in a single sentence."""

    name = "plain"

    async def login(self, executor, username: str, password: str) -> None:
        try:
            reply = await executor.run("/login", {"name": username, "password": password})
        except DeviceCommandError as exc:
            raise LoginRejected(exc.message)

        if reply.done.get("ret"):
            # Pre-6.43 firmware ignores the password and hands out a challenge
            logger.warning("Router answered plain login with a challenge; set device.login_method to 'challenge'")
            raise LoginRejected("router requires challenge-response login")


class ChallengeLogin(LoginStrategy):
    """Pre-6.43 login: MD5 over the password and a router-issued challenge."""

    name = "challenge"

    async def login(self, executor, username: str, password: str) -> None:
        try:
            reply = await executor.run("/login")
        except DeviceCommandError as exc:
            raise LoginRejected(exc.message)

        challenge = reply.done.get("ret")
        if not challenge:
            raise LoginRejected("router did not issue a login challenge")

        try:
            response = challenge_response(password, challenge)
        except ValueError:
            raise LoginRejected(f"malformed login challenge: {challenge!r}")

        try:
            await executor.run("/login", {"name": username, "response": response})
        except DeviceCommandError as exc:
            raise LoginRejected(exc.message)


def challenge_response(password: str, challenge: str) -> str:
    """Compute the legacy login response for a hex challenge."""
    digest = hashlib.md5()
    digest.update(b"\x00")
    digest.update(password.encode("utf-8"))
    digest.update(bytes.fromhex(challenge))
    return "00" + digest.hexdigest()


_STRATEGIES = {
    PlainLogin.name: PlainLogin,
    ChallengeLogin.name: ChallengeLogin,
}


def login_strategy_for(method: str) -> LoginStrategy:
    """Return the login strategy registered under ``method``."""
    try:
        return _STRATEGIES[method]()
    except KeyError:
        raise ValueError(f"Unknown login method: {method}")
