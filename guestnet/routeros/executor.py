"""Command execution over a RouterOS API transport."""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Union

from ..errors import ConnectionLost, DeviceCommandError

logger = logging.getLogger(__name__)

TAG_MARKER = "!"
REPLY = "!re"
DONE = "!done"
TRAP = "!trap"
FATAL = "!fatal"
EMPTY = "!empty"  # RouterOS 7.18+ sends this before !done on empty prints

Arguments = Union[Mapping[str, object], Iterable[str], None]


@dataclass
class Sentence:
    """One reply sentence: a tag word followed by attribute words."""
    words: List[str]
    attributes: Dict[str, str] = field(init=False, default_factory=dict)

    def __post_init__(self):
        for word in self.words[1:] if self.tag else self.words:
            key, value = _split_attribute(word)
            if key:
                self.attributes[key] = value

    @property
    def tag(self) -> str:
        if self.words and self.words[0].startswith(TAG_MARKER):
            return self.words[0]
        return ""

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.attributes.get(key, default)


def _split_attribute(word: str):
    """Split ``=key=value`` (or ``.tag=x`` / ``key=value``) into a pair."""
    body = word[1:] if word.startswith("=") else word
    if "=" not in body:
        return None, None
    key, value = body.split("=", 1)
    return key, value


class ReplyAssembler:
    """Groups a word stream into sentences.

    A word that starts with the tag marker opens a new sentence, flushing any
    open one first; a zero-length word closes the open sentence. Record
    boundaries therefore do not depend on how words were split across reads.
    """

    def __init__(self):
        self._current: Optional[List[str]] = None

    def feed(self, word: str) -> List[Sentence]:
        completed: List[Sentence] = []

        if word == "":
            if self._current is not None:
                completed.append(Sentence(self._current))
                self._current = None
            return completed

        if word.startswith(TAG_MARKER):
            if self._current is not None:
                completed.append(Sentence(self._current))
            self._current = [word]
        elif self._current is None:
            logger.debug(f"Attribute word outside a tagged sentence: {word!r}")
            self._current = [word]
        else:
            self._current.append(word)

        return completed

    def flush(self) -> List[Sentence]:
        if self._current is None:
            return []
        sentence, self._current = Sentence(self._current), None
        return [sentence]


def parse_reply(words: Iterable[str]) -> List[Sentence]:
    """Assemble a complete list of words into sentences."""
    assembler = ReplyAssembler()
    sentences: List[Sentence] = []
    for word in words:
        sentences.extend(assembler.feed(word))
    sentences.extend(assembler.flush())
    return sentences


@dataclass
class Reply:
    """Full answer to one command."""
    records: List[Sentence]
    done: Sentence


def format_words(args: Arguments, prefix: str) -> List[str]:
    """Render a mapping as ``<prefix>key=value`` words; pass word lists through."""
    if args is None:
        return []
    if isinstance(args, Mapping):
        return [f"{prefix}{key}={value}" for key, value in args.items()]
    return list(args)


class CommandExecutor:
    """Sends one sentence and drains its reply.

    Commands are never pipelined: each reply is read to its terminating
    ``!done`` before ``run`` returns.
    """

    def __init__(self, transport):
        self.transport = transport
        # Words read past the end of the previous reply
        self._pending: Deque[str] = deque()

    async def _next_word(self) -> str:
        while not self._pending:
            self._pending.extend(await self.transport.read_words())
        return self._pending.popleft()

    async def execute(self, command: str, args: Arguments = None, queries: Arguments = None) -> List[Sentence]:
        """Run a command and return its ``!re`` records."""
        reply = await self.run(command, args, queries)
        return reply.records

    async def run(self, command: str, args: Arguments = None, queries: Arguments = None) -> Reply:
        """Run a command and return records plus the ``!done`` sentence.

        Raises:
            DeviceCommandError: the router answered with ``!trap``.
            ConnectionLost: socket failure, timeout or ``!fatal``.
            FramingError: the stream broke inside a word.
        """
        words = [command] + format_words(args, "=") + format_words(queries, "?")
        await self.transport.write_sentence(words)
        logger.debug(f"Sent {command} ({len(words) - 1} args)")

        assembler = ReplyAssembler()
        records: List[Sentence] = []
        trap: Optional[Sentence] = None

        while True:
            for sentence in assembler.feed(await self._next_word()):
                tag = sentence.tag

                if tag == REPLY or tag == "":
                    records.append(sentence)
                elif tag == TRAP:
                    # Keep the first trap; the router still sends !done after it
                    trap = trap or sentence
                elif tag == EMPTY:
                    continue
                elif tag == FATAL:
                    reason = sentence.get("message") or (sentence.words[1] if len(sentence.words) > 1 else "")
                    self._pending.clear()
                    await self.transport.disconnect()
                    raise ConnectionLost(f"Router closed the session: {reason or 'fatal'}")
                elif tag == DONE:
                    if trap is not None:
                        raise DeviceCommandError(
                            trap.get("message") or f"Command {command} failed",
                            category=trap.get("category"),
                            command=command,
                        )
                    logger.debug(f"{command}: {len(records)} record(s)")
                    return Reply(records=records, done=sentence)
                else:
                    logger.warning(f"Ignoring unknown reply tag {tag!r} for {command}")
