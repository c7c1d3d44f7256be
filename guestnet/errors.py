"""Error taxonomy shared by the protocol client and the provisioning service.

Every error carries a stable ``kind`` string so callers (CLI, web UI) can
branch on the failure class without parsing messages.
"""

from typing import List, Optional


class GuestNetError(Exception):
    """Base class for all guestnet errors."""

    kind = "error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class FramingError(GuestNetError):
    """Malformed length prefix or truncated word on the wire."""

    kind = "framing_error"


class ConnectionLost(GuestNetError):
    """Socket error or read timeout; the session is no longer usable."""

    kind = "connection_lost"


class DeadlineExceeded(ConnectionLost):
    """A multi-command operation ran past its overall deadline."""

    kind = "deadline_exceeded"


class AuthenticationExhausted(GuestNetError):
    """Every credential candidate was rejected by the router."""

    kind = "authentication_exhausted"

    def __init__(self, attempted_usernames: List[str], last_error: Optional[str] = None):
        self.attempted_usernames = list(attempted_usernames)
        self.last_error = last_error
        message = f"Login failed for all credentials (tried: {', '.join(self.attempted_usernames) or 'none'})"
        if last_error:
            message += f": {last_error}"
        super().__init__(message)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["attempted_usernames"] = self.attempted_usernames
        return data


class DeviceCommandError(GuestNetError):
    """The router answered a command with a !trap."""

    kind = "device_command_error"

    def __init__(self, message: str, category: Optional[str] = None, command: Optional[str] = None):
        super().__init__(message)
        self.category = category
        self.command = command


class ConflictError(GuestNetError):
    """Duplicate name on create, or a store uniqueness guard tripped."""

    kind = "conflict"


class NotFound(GuestNetError):
    """Target absent on lookup."""

    kind = "not_found"


class ValidationError(GuestNetError):
    """Input rejected before any device call."""

    kind = "validation_error"


class GenerationExhausted(GuestNetError):
    """No unique username could be produced within the retry bound."""

    kind = "generation_exhausted"


class PersistenceError(GuestNetError):
    """Store-level failure, e.g. a unique constraint violation."""

    kind = "persistence_error"

    def __init__(self, message: str, constraint: Optional[str] = None):
        super().__init__(message)
        self.constraint = constraint
