from __future__ import annotations

from typing import Optional, Sequence

from genloop.common.errors import ConfigError, DecodeError


class TokenizerAdapter:
    """Narrow view of a ``transformers`` tokenizer used by the engine."""

    def __init__(self, tokenizer):
        self.tokenizer = tokenizer
        self._vocab: Optional[dict[str, int]] = None

    def encode(self, text: str, add_special_tokens: bool = True) -> list[int]:
        return list(self.tokenizer.encode(text, add_special_tokens=add_special_tokens))

    def decode(self, ids: Sequence[int], skip_special: bool = True) -> str:
        try:
            return self.tokenizer.decode(list(ids), skip_special_tokens=skip_special)
        except Exception as e:
            raise DecodeError(f"cannot decode token ids {list(ids)[:8]}: {e}") from e

    def vocab_lookup(self, piece: str) -> Optional[int]:
        if self._vocab is None:
            self._vocab = dict(self.tokenizer.get_vocab())
        return self._vocab.get(piece)

    @property
    def has_chat_template(self) -> bool:
        return getattr(self.tokenizer, "chat_template", None) is not None

    def render_messages(self, messages) -> str:
        """Flatten a message history into a single prompt string.

        A trailing message marked ``prefix`` is continued rather than answered.
        """
        turns = [{"role": m.role, "content": m.text()} for m in messages]
        continue_last = bool(messages) and messages[-1].prefix
        if self.has_chat_template:
            try:
                return self.tokenizer.apply_chat_template(
                    turns,
                    tokenize=False,
                    add_generation_prompt=not continue_last,
                    continue_final_message=continue_last,
                )
            except Exception as e:
                raise ConfigError(f"chat template rejected the message history: {e}") from e

        lines = [f"{t['role']}: {t['content']}" for t in turns]
        if continue_last:
            return "\n".join(lines)
        return "\n".join(lines + ["assistant:"])
