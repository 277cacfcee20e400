from __future__ import annotations

import logging
from typing import Iterator, Optional, Sequence, Union

import torch

from genloop.common.config import GenerationConfig, LanguageModelParams, ModelConfig
from genloop.common.errors import ConfigError, GenerationError
from genloop.engine.generation import GenerationLoop, GenerationResult
from genloop.engine.model_loader import load_model_and_tokenizer, resolve_device, resolve_stop_token_ids
from genloop.engine.request import Message
from genloop.engine.runner import ModelRuntime
from genloop.engine.tokenizer import TokenizerAdapter

logger = logging.getLogger(__name__)

PromptInput = Union[str, Sequence[Message]]


class LanguageModel:
    """
    A loaded model plus the conversation it has seen so far.

    Create with ``LanguageModel.create`` (or the constructor when the model and
    tokenizer are already in memory) and release with ``close()`` or by using
    the session as a context manager. Each ``prompt`` call builds its own
    GenerationLoop, so the cache and token sequence never outlive a request;
    only the weights and the message history are kept between calls.
    """

    def __init__(
        self,
        model,
        tokenizer,
        model_config: Optional[ModelConfig] = None,
        *,
        params: Optional[LanguageModelParams] = None,
        initial_prompts: Sequence[Message] = (),
        stop_token_ids=None,
    ):
        self.model_config = model_config or ModelConfig()
        self.tokenizer = tokenizer if isinstance(tokenizer, TokenizerAdapter) else TokenizerAdapter(tokenizer)
        self.runtime = ModelRuntime(model, device=self.model_config.device)
        self._params = params or LanguageModelParams()
        self.history: list[Message] = list(initial_prompts)
        self._completion_history = False
        if stop_token_ids is None:
            stop_token_ids = resolve_stop_token_ids(model, self.tokenizer)
        self.stop_token_ids = frozenset(stop_token_ids)
        self.closed = False

    @classmethod
    def create(
        cls,
        model_config: Optional[ModelConfig] = None,
        *,
        params: Optional[LanguageModelParams] = None,
        initial_prompts: Sequence[Message] = (),
    ) -> "LanguageModel":
        model, tokenizer, cfg = load_model_and_tokenizer(model_config or ModelConfig())
        session = cls(model, tokenizer, cfg, params=params, initial_prompts=initial_prompts)
        logger.info("session ready: stop ids %s", sorted(session.stop_token_ids))
        return session

    @staticmethod
    def availability(model_config: Optional[ModelConfig] = None) -> str:
        cfg = model_config or ModelConfig()
        if cfg.device != "cpu" and resolve_device(cfg.device) != cfg.device:
            return "unavailable"
        return "available"

    def params(self) -> LanguageModelParams:
        return self._params

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        if self.closed:
            return
        device = self.runtime.device
        self.runtime.model = None
        self.closed = True
        if device == "cuda":
            torch.cuda.empty_cache()
        logger.info("session closed")

    def default_config(self) -> GenerationConfig:
        return GenerationConfig(
            temperature=self._params.default_temperature,
            top_k=self._params.default_top_k,
            max_tokens=self.model_config.max_new_tokens_default,
            repeat_last_n=self.model_config.repeat_last_n,
        )

    def _check_limits(self, config: GenerationConfig) -> GenerationConfig:
        p = self._params
        if config.top_k is not None and config.top_k > p.max_top_k:
            raise ConfigError(f"top_k {config.top_k} exceeds session maximum {p.max_top_k}")
        if config.temperature > p.max_temperature:
            raise ConfigError(f"temperature {config.temperature} exceeds session maximum {p.max_temperature}")
        if config.stop_token_ids is None:
            config = config.with_stop_token_ids(self.stop_token_ids)
        return config

    def _prompt_messages(self, prompt: PromptInput) -> list[Message]:
        if isinstance(prompt, str):
            return [Message(role="user", content=prompt)]
        return list(prompt)

    def _completion_style(self, prompt: PromptInput, history: list[Message]) -> bool:
        """Raw text continuation instead of a role transcript.

        Decided by the first turn of a history and kept for the rest of it.
        """
        if self.tokenizer.has_chat_template:
            return False
        if history:
            return self._completion_history
        return isinstance(prompt, str)

    def _encode(self, prompt: PromptInput, history: list[Message]) -> list[int]:
        turns = history + self._prompt_messages(prompt)
        if self._completion_style(prompt, history):
            return self.tokenizer.encode("".join(m.text() for m in turns))
        text = self.tokenizer.render_messages(turns)
        return self.tokenizer.encode(text, add_special_tokens=not self.tokenizer.has_chat_template)

    def start(
        self,
        prompt: PromptInput,
        config: Optional[GenerationConfig] = None,
        cancel=None,
        *,
        use_history: bool = True,
    ) -> GenerationLoop:
        """Build the GenerationLoop for one request without running it.

        With ``use_history=False`` the session history is neither read nor
        meant to be updated; the prompt alone is the whole context.
        """
        if self.closed:
            raise GenerationError("language model session is closed")
        config = self._check_limits(config or self.default_config())
        tokens = self._encode(prompt, self.history if use_history else [])
        logger.debug("request: %d prompt tokens, max_tokens=%d", len(tokens), config.max_tokens)
        return GenerationLoop(
            self.runtime,
            self.tokenizer,
            tokens,
            config,
            max_iterations=self.model_config.max_iterations,
            cancel=cancel,
        )

    def record_turn(self, prompt: PromptInput, result: GenerationResult):
        if result.finish_reason == "cancelled":
            return
        if not self.history:
            self._completion_history = self._completion_style(prompt, [])
        self.history.extend(self._prompt_messages(prompt))
        self.history.append(Message(role="assistant", content=result.text))

    def generate(self, prompt: PromptInput, config: Optional[GenerationConfig] = None, cancel=None) -> GenerationResult:
        loop = self.start(prompt, config, cancel)
        result = loop.run()
        self.record_turn(prompt, result)
        return result

    def prompt(self, prompt: PromptInput, config: Optional[GenerationConfig] = None, cancel=None) -> str:
        return self.generate(prompt, config, cancel).text

    def prompt_streaming(self, prompt: PromptInput, config: Optional[GenerationConfig] = None, cancel=None) -> Iterator[str]:
        loop = self.start(prompt, config, cancel)
        yield from loop.stream()
        self.record_turn(prompt, loop.result())
