"""RouterOS API word framing.

A sentence is a sequence of words; each word is a variable-width length
prefix followed by that many bytes. A zero-length word ends the sentence.
"""

from typing import Iterable, List, Tuple, Union

from ..errors import FramingError

MAX_LENGTH = 0xFFFFFFFF


def encode_length(length: int) -> bytes:
    """Encode a word length as 1-5 bytes."""
    if length < 0 or length > MAX_LENGTH:
        raise FramingError(f"Word length out of range: {length}")
    if length < 0x80:
        return bytes((length,))
    if length < 0x4000:
        return (length | 0x8000).to_bytes(2, "big")
    if length < 0x200000:
        return (length | 0xC00000).to_bytes(3, "big")
    if length < 0x10000000:
        return (length | 0xE0000000).to_bytes(4, "big")
    return b"\xf0" + length.to_bytes(4, "big")


def _prefix_size(first: int) -> int:
    """Total prefix size implied by the first byte."""
    if first < 0x80:
        return 1
    if first < 0xC0:
        return 2
    if first < 0xE0:
        return 3
    if first < 0xF0:
        return 4
    if first == 0xF0:
        return 5
    # 0xF8-0xFF are control bytes, 0xF1-0xF7 are unassigned
    raise FramingError(f"Invalid length prefix byte: 0x{first:02x}")


def decode_length(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """Decode a length prefix at ``offset``.

    Returns:
        Tuple of (length, prefix size in bytes).

    Raises:
        FramingError: if the prefix is malformed or truncated.
    """
    if offset >= len(data):
        raise FramingError("Truncated length prefix: no bytes available")

    first = data[offset]
    size = _prefix_size(first)
    if offset + size > len(data):
        raise FramingError(
            f"Truncated length prefix: need {size} bytes, have {len(data) - offset}"
        )

    if size == 1:
        return first, 1
    if size == 5:
        return int.from_bytes(data[offset + 1:offset + 5], "big"), 5

    mask = (0x3F, 0x1F, 0x0F)[size - 2]
    value = first & mask
    for byte in data[offset + 1:offset + size]:
        value = (value << 8) | byte
    return value, size


def encode_word(word: Union[str, bytes]) -> bytes:
    """Encode a single word with its length prefix."""
    raw = word.encode("utf-8") if isinstance(word, str) else word
    return encode_length(len(raw)) + raw


def encode_sentence(words: Iterable[Union[str, bytes]]) -> bytes:
    """Encode a full sentence including the zero-length terminator."""
    return b"".join(encode_word(w) for w in words) + b"\x00"


def decode_words(data: bytes) -> List[str]:
    """Decode a complete buffer into words.

    Zero-length terminators are returned as empty strings.

    Raises:
        FramingError: if the buffer ends inside a word.
    """
    decoder = WordDecoder()
    words = decoder.feed(data)
    decoder.finish()
    return words


class WordDecoder:
    """Incremental word decoder.

    Bytes may arrive in arbitrary chunks; ``feed`` returns every word that
    became complete. A partial word stays buffered until more bytes arrive.
    """

    def __init__(self):
        self._buffer = bytearray()

    @property
    def has_partial(self) -> bool:
        """True when bytes of an incomplete word are buffered."""
        return bool(self._buffer)

    def feed(self, data: bytes) -> List[str]:
        self._buffer.extend(data)
        words: List[str] = []

        while self._buffer:
            first = self._buffer[0]
            size = _prefix_size(first)
            if len(self._buffer) < size:
                break
            length, size = decode_length(bytes(self._buffer[:size]))
            end = size + length
            if len(self._buffer) < end:
                break
            words.append(bytes(self._buffer[size:end]).decode("utf-8", errors="replace"))
            del self._buffer[:end]

        return words

    def finish(self) -> None:
        """Assert that the stream ended on a word boundary."""
        if self._buffer:
            pending = len(self._buffer)
            self._buffer.clear()
            raise FramingError(f"Stream ended inside a word ({pending} bytes pending)")
