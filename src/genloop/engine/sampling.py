from __future__ import annotations

from typing import Sequence

import torch

from genloop.common.config import GenerationConfig


def make_generator(seed: int) -> torch.Generator:
    g = torch.Generator(device="cpu")
    g.manual_seed(seed)
    return g


def recent_window(tokens: Sequence[int], repeat_last_n: int) -> Sequence[int]:
    if repeat_last_n <= 0:
        return []
    return tokens[-repeat_last_n:]


def apply_repetition_penalty(logits: torch.Tensor, window: Sequence[int], penalty: float) -> torch.Tensor:
    """
    Discourage tokens seen in ``window``: positive logits are divided by the
    penalty, negative ones multiplied. Returns a new tensor; no renormalization.
    """
    if penalty == 1.0 or len(window) == 0:
        return logits
    ids = torch.tensor(sorted(set(int(t) for t in window)), dtype=torch.long, device=logits.device)
    ids = ids[ids < logits.shape[-1]]
    score = logits.gather(0, ids)
    score = torch.where(score > 0, score / penalty, score * penalty)
    out = logits.clone()
    out.scatter_(0, ids, score)
    return out


def _top_k_filter(probs: torch.Tensor, indices: torch.Tensor, k: int) -> tuple[torch.Tensor, torch.Tensor]:
    k = min(k, probs.shape[-1])
    return probs[:k], indices[:k]


def _top_p_filter(probs: torch.Tensor, indices: torch.Tensor, p: float) -> tuple[torch.Tensor, torch.Tensor]:
    # probs sorted descending; keep the shortest prefix whose mass reaches p
    cumulative = torch.cumsum(probs, dim=-1)
    keep = int(torch.searchsorted(cumulative, torch.tensor([p], dtype=cumulative.dtype)).item()) + 1
    keep = min(max(keep, 1), probs.shape[-1])
    return probs[:keep], indices[:keep]


def sample_next_token(logits: torch.Tensor, config: GenerationConfig, generator: torch.Generator) -> int:
    if config.temperature <= 0:
        return int(torch.argmax(logits).item())

    scaled = logits.float().cpu() / config.temperature
    probs = torch.softmax(scaled, dim=-1)

    if config.top_k is None and config.top_p is None:
        return int(torch.multinomial(probs, num_samples=1, generator=generator).item())

    sorted_probs, sorted_idx = torch.sort(probs, descending=True)
    if config.top_k is not None:
        sorted_probs, sorted_idx = _top_k_filter(sorted_probs, sorted_idx, config.top_k)
        sorted_probs = sorted_probs / sorted_probs.sum()
    if config.top_p is not None:
        sorted_probs, sorted_idx = _top_p_filter(sorted_probs, sorted_idx, config.top_p)

    sorted_probs = sorted_probs / sorted_probs.sum()
    choice = torch.multinomial(sorted_probs, num_samples=1, generator=generator)
    return int(sorted_idx[choice].item())
