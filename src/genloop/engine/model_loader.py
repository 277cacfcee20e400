from __future__ import annotations

import logging
from typing import Iterable, Optional

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer

from genloop.common.config import ModelConfig
from genloop.common.errors import ArtifactError

logger = logging.getLogger(__name__)

# Conventional end markers probed when the model declares no eos id.
EOS_CANDIDATES = (
    "<|endoftext|>",
    "<|eot_id|>",
    "<|im_end|>",
    "<end_of_turn>",
    "<|end|>",
    "</s>",
)


def _dtype_from_str(s: str):
    s = s.lower()
    if s in ("float16", "fp16"):
        return torch.float16
    if s in ("bfloat16", "bf16"):
        return torch.bfloat16
    return torch.float32


def resolve_device(device: str) -> str:
    if device == "cuda" and torch.cuda.is_available():
        return "cuda"
    return "cpu"


def load_model_and_tokenizer(cfg: ModelConfig):
    try:
        tokenizer = AutoTokenizer.from_pretrained(cfg.model_id, revision=cfg.revision, use_fast=True)
        dtype = _dtype_from_str(cfg.dtype)
        model = AutoModelForCausalLM.from_pretrained(cfg.model_id, revision=cfg.revision, torch_dtype=dtype)
    except Exception as e:
        # corrupt weights surface as RuntimeError or SafetensorError, not OSError
        raise ArtifactError(f"failed to load {cfg.model_id}@{cfg.revision}: {e}") from e
    model.eval()

    device = resolve_device(cfg.device)
    if device != cfg.device:
        logger.info("device %s unavailable, falling back to %s", cfg.device, device)
    cfg = cfg.model_copy(update={"device": device})
    model.to(device)

    logger.info("loaded %s@%s on %s (%s)", cfg.model_id, cfg.revision, cfg.device, cfg.dtype)
    return model, tokenizer, cfg


def _as_id_list(value) -> list[int]:
    if value is None:
        return []
    if isinstance(value, int):
        return [value]
    return [int(v) for v in value]


def declared_eos_ids(model) -> list[int]:
    ids: list[int] = []
    for cfg in (getattr(model, "generation_config", None), getattr(model, "config", None)):
        if cfg is None:
            continue
        for tid in _as_id_list(getattr(cfg, "eos_token_id", None)):
            if tid not in ids:
                ids.append(tid)
    return ids


def resolve_stop_token_ids(model, tokenizer, candidates: Iterable[str] = EOS_CANDIDATES) -> frozenset[int]:
    """
    End-of-sequence ids for a model. Declared ids win; otherwise every
    conventional end marker present in the tokenizer vocabulary is used.
    ``tokenizer`` is a TokenizerAdapter.
    """
    declared = declared_eos_ids(model)
    if declared:
        return frozenset(declared)

    probed: list[int] = []
    for piece in candidates:
        tid: Optional[int] = tokenizer.vocab_lookup(piece)
        if tid is not None:
            probed.append(tid)
    if not probed:
        logger.warning("no end-of-sequence id declared or found in vocabulary; generation stops on length only")
    return frozenset(probed)
