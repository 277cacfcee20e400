from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from genloop.common.errors import ConfigError

DEFAULT_REPEAT_LAST_N = 128
DEFAULT_MAX_ITERATIONS = 10_000
DEFAULT_SEED = 299792458


class ModelConfig(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str = "distilgpt2"
    revision: str = "main"
    device: str = "cpu"   # change to "cuda" if you have it
    dtype: str = "float32"
    max_new_tokens_default: int = 64
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    repeat_last_n: int = DEFAULT_REPEAT_LAST_N


class LanguageModelParams(BaseModel):
    """Sampling limits advertised by a session."""

    model_config = ConfigDict(frozen=True)

    default_top_k: int = 40
    max_top_k: int = 128
    default_temperature: float = 0.8
    max_temperature: float = 2.0


class GenerationConfig(BaseModel):
    """Immutable per-request sampling/stop policy.

    A temperature <= 0 selects greedy decoding. ``stop_token_ids=None`` means
    the session substitutes the model's end-of-sequence ids.
    """

    model_config = ConfigDict(frozen=True)

    temperature: float = Field(default=1.0, allow_inf_nan=False)
    top_k: Optional[int] = Field(default=None, gt=0)
    top_p: Optional[float] = Field(default=None, gt=0.0, le=1.0, allow_inf_nan=False)
    repetition_penalty: float = Field(default=1.0, gt=0.0, allow_inf_nan=False)
    repeat_last_n: int = Field(default=DEFAULT_REPEAT_LAST_N, ge=0)
    max_tokens: int = Field(default=64, ge=0)
    stop_token_ids: Optional[frozenset[int]] = None
    seed: int = DEFAULT_SEED
    use_kv_cache: bool = True

    @field_validator("stop_token_ids")
    @classmethod
    def _non_negative_ids(cls, v):
        if v is not None and any(t < 0 for t in v):
            raise ValueError("stop token ids must be non-negative")
        return v

    @classmethod
    def from_options(cls, **options) -> "GenerationConfig":
        try:
            return cls(**options)
        except ValidationError as e:
            raise ConfigError(f"invalid generation config: {e}") from e

    def with_stop_token_ids(self, stop_token_ids) -> "GenerationConfig":
        return self.model_copy(update={"stop_token_ids": frozenset(stop_token_ids)})
