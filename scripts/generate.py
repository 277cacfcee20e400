#!/usr/bin/env python3
"""Stream a completion for one prompt to stdout."""
from __future__ import annotations

import argparse
import logging
import sys

from genloop.common.config import GenerationConfig, ModelConfig
from genloop.common.errors import GenerationError
from genloop.engine.session import LanguageModel


def main() -> int:
    parser = argparse.ArgumentParser(description="Generate text from a causal LM.")
    parser.add_argument("prompt", help="Prompt text.")
    parser.add_argument("--model", default="distilgpt2")
    parser.add_argument("--revision", default="main")
    parser.add_argument("--device", default="cpu", help="'cpu' or 'cuda'.")
    parser.add_argument("--dtype", default="float32")
    parser.add_argument("--max-tokens", type=int, default=64)
    parser.add_argument("--temperature", type=float, default=0.8, help="<= 0 for greedy decoding.")
    parser.add_argument("--top-k", type=int, default=None)
    parser.add_argument("--top-p", type=float, default=None)
    parser.add_argument("--repetition-penalty", type=float, default=1.1)
    parser.add_argument("--repeat-last-n", type=int, default=128)
    parser.add_argument("--seed", type=int, default=299792458)
    parser.add_argument("--no-kv-cache", action="store_true")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = GenerationConfig.from_options(
            temperature=args.temperature,
            top_k=args.top_k,
            top_p=args.top_p,
            repetition_penalty=args.repetition_penalty,
            repeat_last_n=args.repeat_last_n,
            max_tokens=args.max_tokens,
            seed=args.seed,
            use_kv_cache=not args.no_kv_cache,
        )
        model_config = ModelConfig(model_id=args.model, revision=args.revision, device=args.device, dtype=args.dtype)
        with LanguageModel.create(model_config) as lm:
            loop = lm.start(args.prompt, config)
            print(args.prompt, end="", flush=True)
            for delta in loop.stream():
                print(delta, end="", flush=True)
            print()
            result = loop.result()
    except GenerationError as e:
        print(f"error ({e.label}): {e.reason}", file=sys.stderr)
        return 1

    tps = f"{result.tokens_per_second:.2f}" if result.tokens_per_second else "n/a"
    print(
        f"{len(result.token_ids)} tokens, finish={result.finish_reason}, "
        f"prefill {result.prefill_s:.3f}s, {tps} tokens/s",
        file=sys.stderr,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
