"""RouterOS API client: framing, transport and command execution."""

from .codec import WordDecoder, decode_length, encode_length, encode_sentence, encode_word
from .executor import CommandExecutor, Reply, ReplyAssembler, Sentence, parse_reply
from .login import ChallengeLogin, LoginStrategy, PlainLogin, login_strategy_for
from .transport import LoginRejected, Transport

__all__ = [
    "WordDecoder",
    "decode_length",
    "encode_length",
    "encode_sentence",
    "encode_word",
    "CommandExecutor",
    "Reply",
    "ReplyAssembler",
    "Sentence",
    "parse_reply",
    "ChallengeLogin",
    "LoginStrategy",
    "PlainLogin",
    "login_strategy_for",
    "LoginRejected",
    "Transport",
]
