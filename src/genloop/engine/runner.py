from __future__ import annotations

from typing import Sequence

import torch

from genloop.common.errors import ModelRuntimeError
from genloop.engine.kv_cache import KVCache


class ModelRuntime:
    """Forward pass of a causal LM over a per-request KV cache.

    The wrapped model is any module taking ``input_ids``, ``past_key_values``,
    ``use_cache`` and ``return_dict`` and returning ``.logits`` and
    ``.past_key_values`` (the ``transformers`` causal LM contract). Weights are
    read-only here, so one runtime can serve many requests as long as each
    brings its own cache.
    """

    def __init__(self, model, device: str = "cpu"):
        self.model = model
        self.device = device

    @torch.no_grad()
    def forward(self, context_tokens: Sequence[int], position_offset: int, cache: KVCache) -> torch.Tensor:
        """Fold ``context_tokens`` into ``cache`` and return last-position logits."""
        if not context_tokens:
            raise ModelRuntimeError("forward called with an empty context")
        if position_offset != cache.position:
            raise ModelRuntimeError(
                f"position offset {position_offset} does not match cache position {cache.position}"
            )

        input_ids = torch.tensor([list(context_tokens)], dtype=torch.long, device=self.device)
        try:
            out = self.model(
                input_ids=input_ids,
                past_key_values=cache.past_key_values,
                use_cache=True,
                return_dict=True,
            )
        except Exception as e:
            raise ModelRuntimeError(f"forward pass failed at position {position_offset}: {e}") from e

        logits = out.logits[0, -1, :].float()
        if torch.isnan(logits).any():
            raise ModelRuntimeError(f"forward pass produced NaN logits at position {position_offset}")

        cache.absorb(out.past_key_values, len(context_tokens))
        return logits

    def prefill(self, prompt_tokens: Sequence[int], cache: KVCache) -> torch.Tensor:
        cache.reset()
        return self.forward(prompt_tokens, 0, cache)

    def decode_step(self, tokens: Sequence[int], cache: KVCache, use_kv_cache: bool = True) -> torch.Tensor:
        """Run the forward pass over the tokens the cache has not seen yet.

        With cache reuse this is only the newest token after prefill. Without
        it the cache is dropped and the whole sequence is recomputed.
        """
        if not use_kv_cache:
            cache.reset()
        return self.forward(tokens[cache.position:], cache.position, cache)
