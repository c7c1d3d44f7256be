"""Tests for RouterOS API word framing."""

import pytest

from guestnet.errors import FramingError
from guestnet.routeros.codec import (
    WordDecoder,
    decode_length,
    decode_words,
    encode_length,
    encode_sentence,
    encode_word,
)


BOUNDARY_LENGTHS = [0, 1, 127, 128, 16383, 16384, 2097151, 2097152, 268435455, 268435456]


class TestLengthPrefix:
    """Length prefix encode/decode."""

    @pytest.mark.parametrize("length", BOUNDARY_LENGTHS)
    def test_round_trip_at_width_boundaries(self, length):
        encoded = encode_length(length)
        assert decode_length(encoded) == (length, len(encoded))

    @pytest.mark.parametrize("length,size", [
        (0, 1), (127, 1), (128, 2), (16383, 2), (16384, 3),
        (2097151, 3), (2097152, 4), (268435455, 4), (268435456, 5),
    ])
    def test_prefix_width(self, length, size):
        assert len(encode_length(length)) == size

    def test_known_encodings(self):
        assert encode_length(0x7F) == b"\x7f"
        assert encode_length(0x80) == b"\x80\x80"
        assert encode_length(0x4000) == b"\xc0\x40\x00"
        assert encode_length(0x200000) == b"\xe0\x20\x00\x00"
        assert encode_length(0x10000000) == b"\xf0\x10\x00\x00\x00"

    def test_decode_at_offset(self):
        data = b"\x05" + encode_length(300)
        assert decode_length(data, 1) == (300, 2)

    def test_negative_length_rejected(self):
        with pytest.raises(FramingError):
            encode_length(-1)

    @pytest.mark.parametrize("first", [0xF1, 0xF7, 0xF8, 0xFF])
    def test_invalid_first_byte(self, first):
        with pytest.raises(FramingError):
            decode_length(bytes([first, 0, 0, 0, 0]))

    @pytest.mark.parametrize("data", [b"", b"\x80", b"\xc0\x01", b"\xe0\x00\x00", b"\xf0\x00\x00\x00"])
    def test_truncated_prefix(self, data):
        with pytest.raises(FramingError):
            decode_length(data)


class TestSentenceEncoding:
    """Sentence encoding."""

    def test_sentence_ends_with_empty_word(self):
        encoded = encode_sentence(["/login", "=name=admin"])
        assert encoded == b"\x06/login\x0b=name=admin\x00"

    def test_word_uses_utf8_byte_length(self):
        encoded = encode_word("=comment=Ünïcode")
        length, size = decode_length(encoded)
        assert length == len("=comment=Ünïcode".encode("utf-8"))
        assert encoded[size:].decode("utf-8") == "=comment=Ünïcode"

    def test_long_word_round_trip(self):
        word = "=comment=" + "x" * 20000
        assert decode_words(encode_sentence([word])) == [word, ""]


class TestWordDecoder:
    """Incremental decoding."""

    def test_decode_complete_buffer(self):
        data = encode_sentence(["!re", "=name=room101-123"]) + encode_sentence(["!done"])
        assert decode_words(data) == ["!re", "=name=room101-123", "", "!done", ""]

    @pytest.mark.parametrize("chunk_size", [1, 2, 3, 7, 64])
    def test_arbitrary_chunking(self, chunk_size):
        data = encode_sentence(["!re", "=name=" + "a" * 200, "=profile=hotel-guest"]) + encode_sentence(["!done"])
        decoder = WordDecoder()
        words = []
        for i in range(0, len(data), chunk_size):
            words.extend(decoder.feed(data[i:i + chunk_size]))
        decoder.finish()
        assert words == ["!re", "=name=" + "a" * 200, "=profile=hotel-guest", "", "!done", ""]

    def test_partial_word_is_buffered(self):
        decoder = WordDecoder()
        assert decoder.feed(b"\x05ab") == []
        assert decoder.has_partial
        assert decoder.feed(b"cde") == ["abcde"]
        assert not decoder.has_partial

    def test_truncated_stream_raises(self):
        with pytest.raises(FramingError):
            decode_words(b"\x05abc")

    def test_invalid_prefix_in_stream_raises(self):
        decoder = WordDecoder()
        with pytest.raises(FramingError):
            decoder.feed(b"\x03abc\xf8")

    def test_invalid_utf8_is_replaced(self):
        assert decode_words(b"\x02\xff\xfe") == ["\ufffd\ufffd"]
