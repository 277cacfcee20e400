from __future__ import annotations

from typing import Optional


class IncrementalDetokenizer:
    """
    Turns a growing token sequence into append-only text.

    Text is only released once the decoded tail ends on an alphanumeric
    character, so byte-fallback pieces and multi-token glyphs are held back
    until they are complete. Everything between ``prev_index`` and the end of
    ``tokens`` is re-decoded on each step; text before ``prev_index`` has
    already been emitted and is never revisited.
    """

    def __init__(self, tokenizer):
        self.tokenizer = tokenizer
        self.tokens: list[int] = []
        self.prev_index = 0
        self.current_index = 0

    def _decode(self, ids: list[int]) -> str:
        if not ids:
            return ""
        return self.tokenizer.decode(ids, skip_special=True)

    def next_token(self, token: int) -> Optional[str]:
        prev_text = self._decode(self.tokens[self.prev_index:self.current_index])
        self.tokens.append(token)
        text = self._decode(self.tokens[self.prev_index:])
        if len(text) > len(prev_text) and text[-1].isalnum():
            delta = text[len(prev_text):]
            self.prev_index = self.current_index
            self.current_index = len(self.tokens)
            return delta
        return None

    def decode_rest(self) -> Optional[str]:
        """Flush whatever the alphanumeric guard withheld."""
        prev_text = self._decode(self.tokens[self.prev_index:self.current_index])
        text = self._decode(self.tokens[self.prev_index:])
        self.prev_index = self.current_index
        self.current_index = len(self.tokens)
        if len(text) > len(prev_text):
            return text[len(prev_text):]
        return None

    def decode_all(self) -> str:
        return self._decode(self.tokens)

    def clear(self):
        self.tokens = []
        self.prev_index = 0
        self.current_index = 0
