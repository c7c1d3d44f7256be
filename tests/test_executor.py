"""Tests for reply assembly and command execution."""

import pytest

from guestnet.errors import ConnectionLost, DeviceCommandError
from guestnet.routeros.codec import WordDecoder, encode_sentence
from guestnet.routeros.executor import (
    CommandExecutor,
    ReplyAssembler,
    Sentence,
    format_words,
    parse_reply,
)


class ScriptedTransport:
    """Replays a byte stream in fixed-size reads and records what was written."""

    def __init__(self, stream: bytes, chunk_size: int = 4096):
        self._chunks = [stream[i:i + chunk_size] for i in range(0, len(stream), chunk_size)]
        self._decoder = WordDecoder()
        self.written = []
        self.disconnected = False

    async def write_sentence(self, words):
        self.written.append(list(words))

    async def read_words(self):
        if not self._chunks:
            raise ConnectionLost("script exhausted")
        return self._decoder.feed(self._chunks.pop(0))

    async def disconnect(self):
        self.disconnected = True


def stream(*sentences):
    return b"".join(encode_sentence(words) for words in sentences)


class TestSentence:
    """Attribute parsing."""

    def test_attributes_and_tag(self):
        sentence = Sentence(["!re", "=.id=*1A", "=name=101-042", "=comment=a=b"])
        assert sentence.tag == "!re"
        assert sentence.get(".id") == "*1A"
        assert sentence.get("name") == "101-042"
        assert sentence.get("comment") == "a=b"

    def test_untagged_sentence(self):
        sentence = Sentence(["=name=x"])
        assert sentence.tag == ""
        assert sentence.get("name") == "x"

    def test_format_words(self):
        assert format_words({"name": "a", "profile": "p"}, "=") == ["=name=a", "=profile=p"]
        assert format_words({"user": "a"}, "?") == ["?user=a"]
        assert format_words(["?#|"], "?") == ["?#|"]
        assert format_words(None, "=") == []


class TestReplyAssembler:
    """Grouping a word stream into sentences."""

    WORDS = [
        "!re", "=name=a", "=profile=hotel-guest", "",
        "!re", "=name=b", "",
        "!re", "=name=c", "=comment=room 3", "",
        "!re", "=name=d", "",
        "!done", "",
    ]

    def test_interleaved_records(self):
        sentences = parse_reply(self.WORDS)
        assert [s.tag for s in sentences] == ["!re"] * 4 + ["!done"]
        assert [s.get("name") for s in sentences[:4]] == ["a", "b", "c", "d"]
        assert sentences[2].get("comment") == "room 3"

    @pytest.mark.parametrize("chunk_size", [1, 2, 5, 13])
    def test_boundaries_independent_of_read_splits(self, chunk_size):
        data = b"".join(encode_sentence(w) for w in (
            ["!re", "=name=a", "=profile=hotel-guest"],
            ["!re", "=name=b"],
            ["!re", "=name=c", "=comment=room 3"],
            ["!re", "=name=d"],
            ["!done"],
        ))
        decoder = WordDecoder()
        assembler = ReplyAssembler()
        sentences = []
        for i in range(0, len(data), chunk_size):
            for word in decoder.feed(data[i:i + chunk_size]):
                sentences.extend(assembler.feed(word))

        assert [s.get("name") for s in sentences if s.tag == "!re"] == ["a", "b", "c", "d"]
        assert sentences[-1].tag == "!done"

    def test_tag_without_terminator_flushes_previous(self):
        sentences = parse_reply(["!re", "=name=a", "!re", "=name=b", "!done"])
        assert [s.get("name") for s in sentences[:2]] == ["a", "b"]
        assert sentences[2].tag == "!done"


class TestCommandExecutor:
    """Executing commands against a scripted transport."""

    @pytest.mark.asyncio
    async def test_records_returned_after_done(self):
        transport = ScriptedTransport(stream(
            ["!re", "=.id=*1", "=name=101-001"],
            ["!re", "=.id=*2", "=name=102-002"],
            ["!done"],
        ), chunk_size=3)
        executor = CommandExecutor(transport)

        records = await executor.execute("/ip/hotspot/user/print", queries={"name": "101-001"})

        assert [r.get("name") for r in records] == ["101-001", "102-002"]
        assert transport.written == [["/ip/hotspot/user/print", "?name=101-001"]]

    @pytest.mark.asyncio
    async def test_done_ret_is_exposed(self):
        transport = ScriptedTransport(stream(["!done", "=ret=*5"]))
        reply = await CommandExecutor(transport).run("/ip/hotspot/user/add", {"name": "x"})
        assert reply.records == []
        assert reply.done.get("ret") == "*5"

    @pytest.mark.asyncio
    async def test_empty_tag_is_skipped(self):
        transport = ScriptedTransport(stream(["!empty"], ["!done"]))
        assert await CommandExecutor(transport).execute("/ip/hotspot/active/print") == []

    @pytest.mark.asyncio
    async def test_trap_raised_only_after_done(self):
        transport = ScriptedTransport(stream(
            ["!trap", "=category=1", "=message=failure: already have user with this name"],
            ["!done"],
            ["!done", "=ret=next-command"],
        ))
        executor = CommandExecutor(transport)

        with pytest.raises(DeviceCommandError) as excinfo:
            await executor.run("/ip/hotspot/user/add", {"name": "101-001"})

        assert excinfo.value.category == "1"
        assert excinfo.value.command == "/ip/hotspot/user/add"
        assert "already have" in excinfo.value.message
        # Stream is positioned at the next reply, not inside the failed one
        reply = await executor.run("/system/identity/print")
        assert reply.done.get("ret") == "next-command"

    @pytest.mark.asyncio
    async def test_first_trap_wins(self):
        transport = ScriptedTransport(stream(
            ["!trap", "=message=first"],
            ["!trap", "=message=second"],
            ["!done"],
        ))
        with pytest.raises(DeviceCommandError, match="first"):
            await CommandExecutor(transport).run("/x")

    @pytest.mark.asyncio
    async def test_fatal_closes_session(self):
        transport = ScriptedTransport(stream(["!fatal", "session terminated on request"]))
        with pytest.raises(ConnectionLost, match="session terminated"):
            await CommandExecutor(transport).run("/quit")
        assert transport.disconnected

    @pytest.mark.asyncio
    async def test_connection_lost_mid_reply(self):
        transport = ScriptedTransport(stream(["!re", "=name=a"]))
        with pytest.raises(ConnectionLost):
            await CommandExecutor(transport).run("/ip/hotspot/user/print")
