from __future__ import annotations

import pytest

from genloop.common.errors import DecodeError
from genloop.engine.detokenizer import IncrementalDetokenizer
from genloop.engine.tokenizer import TokenizerAdapter


class _ByteTokenizer:
    """Byte-level vocabulary: multi-byte characters span several tokens."""

    def encode(self, text: str, add_special_tokens: bool = True):
        del add_special_tokens
        return list(text.encode("utf-8"))

    def decode(self, ids, skip_special_tokens: bool = True):
        del skip_special_tokens
        return bytes(ids).decode("utf-8", errors="replace")

    def get_vocab(self):
        return {}


class _BrokenTokenizer(_ByteTokenizer):
    def decode(self, ids, skip_special_tokens: bool = True):
        raise IndexError("piece id out of range")


def _feed(text: str):
    tok = TokenizerAdapter(_ByteTokenizer())
    detok = IncrementalDetokenizer(tok)
    deltas = []
    indices = []
    for token in tok.encode(text):
        delta = detok.next_token(token)
        indices.append((detok.prev_index, detok.current_index))
        if delta is not None:
            deltas.append(delta)
    rest = detok.decode_rest()
    return detok, deltas, rest, indices


@pytest.mark.parametrize(
    "text",
    [
        "hello world",
        "héllo wörld!",
        "naïve café, déjà vu.",
        "日本語のテキスト",
        "hi 🙂 there",
        "ends with emoji 🎉",
        "",
    ],
)
def test_deltas_concatenate_to_full_decode(text):
    detok, deltas, rest, _ = _feed(text)
    assert "".join(deltas) + (rest or "") == detok.decode_all() == text


@pytest.mark.parametrize("text", ["héllo wörld", "日本語", "a🙂b", "xéèy"])
def test_partial_characters_are_never_emitted(text):
    _, deltas, rest, _ = _feed(text)
    for chunk in deltas + [rest or ""]:
        assert "�" not in chunk


def test_indices_never_move_backwards():
    _, _, _, indices = _feed("The quick, brown fox jumps. Über alles!")
    for (p0, c0), (p1, c1) in zip(indices, indices[1:]):
        assert p1 >= p0
        assert c1 >= c0
        assert p1 <= c1


def test_multibyte_char_is_withheld_until_complete():
    tok = TokenizerAdapter(_ByteTokenizer())
    detok = IncrementalDetokenizer(tok)
    assert detok.next_token(ord("h")) == "h"
    assert detok.next_token(0xC3) is None
    assert detok.next_token(0xA9) == "é"


def test_punctuation_waits_for_next_word_or_flush():
    tok = TokenizerAdapter(_ByteTokenizer())
    detok = IncrementalDetokenizer(tok)
    assert detok.next_token(ord("a")) == "a"
    assert detok.next_token(ord(",")) is None
    assert detok.next_token(ord(" ")) is None
    assert detok.next_token(ord("b")) == ", b"
    assert detok.next_token(ord(".")) is None
    assert detok.decode_rest() == "."
    # flushing twice does not repeat text
    assert detok.decode_rest() is None


def test_decode_rest_with_nothing_pending():
    tok = TokenizerAdapter(_ByteTokenizer())
    detok = IncrementalDetokenizer(tok)
    assert detok.decode_rest() is None
    detok.next_token(ord("z"))
    assert detok.decode_rest() is None


def test_decode_failure_is_a_decode_error():
    detok = IncrementalDetokenizer(TokenizerAdapter(_BrokenTokenizer()))
    with pytest.raises(DecodeError):
        detok.next_token(5)
