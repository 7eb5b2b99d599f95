"""Tests for token estimation helpers."""

from agentu.utils import tokenization
from agentu.utils.tokenization import (
    MESSAGE_OVERHEAD_TOKENS,
    chars_to_tokens_estimate,
    estimate_message_tokens,
    estimate_tokens,
)


class TestEstimateTokens:
    def test_empty_text_is_zero(self):
        assert estimate_tokens("") == 0

    def test_non_empty_text_is_positive(self):
        assert estimate_tokens("hello world") > 0

    def test_heuristic_when_encoder_unavailable(self, monkeypatch):
        monkeypatch.setattr(tokenization, "_get_encoder", lambda name: None)
        assert estimate_tokens("x" * 10) == 3

    def test_heuristic_when_encoding_fails(self, monkeypatch):
        class BrokenEncoder:
            def encode(self, text, disallowed_special=()):
                raise RuntimeError("bad bpe")

        monkeypatch.setattr(tokenization, "_get_encoder", lambda name: BrokenEncoder())
        assert estimate_tokens("x" * 8) == 2


class TestMessageTokens:
    def test_overhead_per_message(self, monkeypatch):
        monkeypatch.setattr(tokenization, "_get_encoder", lambda name: None)
        messages = [{"role": "user", "content": "abcd"}, {"role": "assistant", "content": ""}]
        assert estimate_message_tokens(messages) == 2 * MESSAGE_OVERHEAD_TOKENS + 1


def test_char_conversions():
    assert chars_to_tokens_estimate(0) == 0
    assert chars_to_tokens_estimate(1) == 1
    assert chars_to_tokens_estimate(8) == 2
