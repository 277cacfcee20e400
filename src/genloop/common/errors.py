"""Failure taxonomy for generation requests.

Every failure surfaces to the caller as a GenerationError subclass with a
human-readable reason. Nothing in the engine retries.
"""


class GenerationError(Exception):
    """Base class for labeled generation failures."""

    label = "generation_error"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)

    def to_dict(self) -> dict:
        return {"error": self.label, "message": self.reason}


class ConfigError(GenerationError):
    """Malformed GenerationConfig or options outside session limits."""

    label = "config_error"


class ArtifactError(GenerationError):
    """Tokenizer/model load failure, raised at session creation."""

    label = "artifact_error"


class ModelRuntimeError(GenerationError):
    """Forward pass failed; aborts the request."""

    label = "runtime_error"


class DecodeError(GenerationError):
    """Tokenizer could not decode a produced token id."""

    label = "decode_error"
