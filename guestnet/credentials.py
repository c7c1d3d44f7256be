"""Guest username/password generation."""

import logging
import re
import secrets
import string
from typing import Optional

from .config import CredentialsConfig
from .errors import GenerationExhausted, ValidationError

logger = logging.getLogger(__name__)

PASSWORD_ALPHABET = string.ascii_letters + string.digits
USERNAME_SEPARATOR = "-"

# Upper bound on redraws when the sequential-run filter is on
MAX_PASSWORD_DRAWS = 100


def sanitize_room(room: str, max_length: int = 6) -> str:
    """Strip everything but letters and digits, then truncate."""
    return re.sub(r"[^a-zA-Z0-9]", "", room or "")[:max_length]


def has_sequential_run(value: str, run: int = 3) -> bool:
    """True if ``value`` holds ``run`` consecutive ascending digits starting at 1 or above."""
    for i in range(len(value) - run + 1):
        chunk = value[i:i + run]
        if not chunk.isdigit() or chunk[0] == "0":
            continue
        steps = {int(b) - int(a) for a, b in zip(chunk, chunk[1:])}
        if steps == {1}:
            return True
    return False


class CredentialGenerator:
    """Produces usernames that are unique among active records, and passwords."""

    def __init__(self, store, config: Optional[CredentialsConfig] = None, rng: Optional[secrets.SystemRandom] = None):
        """Initialize the generator.

        Args:
            store: Anything with an async ``username_in_use(username)``.
            config: Generation settings.
            rng: Random source; a ``secrets.SystemRandom`` by default.
        """
        self.store = store
        self.config = config or CredentialsConfig()
        self._rng = rng or secrets.SystemRandom()

    def _suffix(self) -> str:
        digits = self.config.username_suffix_digits
        return "".join(str(self._rng.randrange(10)) for _ in range(digits))

    def candidate_username(self, room: str) -> str:
        prefix = sanitize_room(room, self.config.room_prefix_max)
        if not prefix:
            raise ValidationError(f"Room '{room}' has no letters or digits")
        return f"{prefix}{USERNAME_SEPARATOR}{self._suffix()}"

    async def username(self, room: str) -> str:
        """Generate a username not held by any active record.

        Raises:
            ValidationError: the room sanitizes to nothing.
            GenerationExhausted: every retry collided.
        """
        attempts = self.config.generation_retries
        for _ in range(attempts):
            candidate = self.candidate_username(room)
            if not await self.store.username_in_use(candidate):
                return candidate
            logger.debug(f"Username {candidate} already active, re-rolling")

        raise GenerationExhausted(
            f"No free username for room '{room}' after {attempts} attempts "
            f"({self.config.username_suffix_digits}-digit suffix)"
        )

    def password(self, length: Optional[int] = None) -> str:
        """Draw a random alphanumeric password."""
        length = length or self.config.password_length
        for _ in range(MAX_PASSWORD_DRAWS):
            password = "".join(self._rng.choice(PASSWORD_ALPHABET) for _ in range(length))
            if not self.config.reject_sequential_runs or not has_sequential_run(password):
                return password
        raise GenerationExhausted(f"No password of length {length} passed the sequential-run filter")
