from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Iterator, Optional, Sequence

from genloop.common.config import DEFAULT_MAX_ITERATIONS, GenerationConfig
from genloop.common.errors import ConfigError, GenerationError, ModelRuntimeError
from genloop.engine.detokenizer import IncrementalDetokenizer
from genloop.engine.kv_cache import KVCache
from genloop.engine.runner import ModelRuntime
from genloop.engine.sampling import apply_repetition_penalty, make_generator, recent_window, sample_next_token

logger = logging.getLogger(__name__)


class GenerationState(enum.Enum):
    PREFILL = "prefill"
    DECODING = "decoding"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class StepOutput:
    token_id: Optional[int]  # None for the final detokenizer flush
    text: Optional[str]


@dataclass
class GenerationResult:
    text: str
    token_ids: list[int]
    finish_reason: str
    prompt_tokens: int
    iterations: int
    prefill_s: float = 0.0
    decode_s: float = 0.0
    tokens_per_second: Optional[float] = None
    deltas: list[str] = field(default_factory=list)

    def timing(self) -> dict:
        return {
            "prefill_s": self.prefill_s,
            "decode_s": self.decode_s,
            "total_s": self.prefill_s + self.decode_s,
            "tokens_per_second": self.tokens_per_second,
        }


class GenerationLoop:
    """
    Drives one request from prefill to stop.

    Owns the token sequence, KV cache, sampler state and detokenizer for a
    single request. Each iteration is penalty -> sample -> stop check ->
    append -> detokenize; the forward pass producing the next logits runs at
    the start of the following iteration, after the cancellation check, so a
    cancelled request never starts another forward pass.

    A loop runs once. ``stream()`` yields non-empty text deltas, ``run()``
    collects them into a GenerationResult; both go through ``iter_steps()``.
    """

    def __init__(
        self,
        runtime: ModelRuntime,
        tokenizer,
        prompt_tokens: Sequence[int],
        config: GenerationConfig,
        *,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        cancel=None,
    ):
        if len(prompt_tokens) == 0:
            raise ConfigError("prompt encodes to zero tokens")
        self.runtime = runtime
        self.tokenizer = tokenizer
        self.config = config
        self.max_iterations = max_iterations
        self.cancel = cancel
        self.stop_token_ids = frozenset(config.stop_token_ids or ())

        self.tokens: list[int] = list(prompt_tokens)
        self.prompt_len = len(self.tokens)
        self.generated: list[int] = []
        self.cache = KVCache()
        self.detokenizer = IncrementalDetokenizer(tokenizer)
        self.generator = make_generator(config.seed)

        self.state = GenerationState.PREFILL
        self.finish_reason: Optional[str] = None
        self.iterations = 0
        self.deltas: list[str] = []
        self.prefill_s = 0.0
        self.decode_s = 0.0

    @property
    def budget(self) -> int:
        return min(self.config.max_tokens, self.max_iterations)

    def _cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()

    def _next_logits(self):
        if self.state is GenerationState.PREFILL:
            t0 = time.perf_counter()
            logits = self.runtime.prefill(self.tokens, self.cache)
            self.prefill_s = time.perf_counter() - t0
            self.state = GenerationState.DECODING
            return logits
        return self.runtime.decode_step(self.tokens, self.cache, use_kv_cache=self.config.use_kv_cache)

    def _sample(self, logits) -> int:
        window = recent_window(self.tokens, self.config.repeat_last_n)
        logits = apply_repetition_penalty(logits, window, self.config.repetition_penalty)
        try:
            return sample_next_token(logits, self.config, self.generator)
        except RuntimeError as e:
            raise ModelRuntimeError(f"sampling failed at step {self.iterations}: {e}") from e

    def iter_steps(self) -> Iterator[StepOutput]:
        if self.state is not GenerationState.PREFILL:
            raise GenerationError(f"generation loop already {self.state.value}")

        t0 = time.perf_counter()
        self.finish_reason = "length"
        try:
            for _ in range(self.budget):
                if self._cancelled():
                    self.finish_reason = "cancelled"
                    break

                token = self._sample(self._next_logits())
                self.iterations += 1
                if token in self.stop_token_ids:
                    self.finish_reason = "stop"
                    break

                self.tokens.append(token)
                self.generated.append(token)
                delta = self.detokenizer.next_token(token)
                if delta:
                    self.deltas.append(delta)
                yield StepOutput(token, delta)

            rest = self.detokenizer.decode_rest()
        except GeneratorExit:
            self.finish_reason = "cancelled"
            self.state = GenerationState.STOPPED
            raise
        except GenerationError:
            self.state = GenerationState.FAILED
            logger.debug("generation failed after %d iterations", self.iterations)
            raise

        self.state = GenerationState.STOPPED
        self.decode_s = max(time.perf_counter() - t0 - self.prefill_s, 0.0)
        logger.debug(
            "generation stopped: reason=%s prompt_tokens=%d new_tokens=%d",
            self.finish_reason,
            self.prompt_len,
            len(self.generated),
        )
        if rest:
            self.deltas.append(rest)
            yield StepOutput(None, rest)

    def stream(self) -> Iterator[str]:
        for step in self.iter_steps():
            if step.text:
                yield step.text

    def run(self) -> GenerationResult:
        for _ in self.iter_steps():
            pass
        return self.result()

    def result(self) -> GenerationResult:
        total_s = self.prefill_s + self.decode_s
        n = len(self.generated)
        return GenerationResult(
            text="".join(self.deltas),
            token_ids=list(self.generated),
            finish_reason=self.finish_reason or "length",
            prompt_tokens=self.prompt_len,
            iterations=self.iterations,
            prefill_s=self.prefill_s,
            decode_s=self.decode_s,
            tokens_per_second=(n / total_s) if total_s > 0 else None,
            deltas=list(self.deltas),
        )
