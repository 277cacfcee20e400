from __future__ import annotations

from typing import Any


class KVCache:
    """Per-request key/value cache.

    Holds whatever ``past_key_values`` object the model returns plus the
    number of tokens already folded into it. Owned by exactly one
    GenerationLoop and never shared across requests.
    """

    def __init__(self):
        self.past_key_values: Any = None
        self.position = 0

    def absorb(self, past_key_values: Any, consumed: int):
        self.past_key_values = past_key_values
        self.position += consumed

    def reset(self):
        self.past_key_values = None
        self.position = 0

    def __repr__(self):
        return f"KVCache(position={self.position}, empty={self.past_key_values is None})"
