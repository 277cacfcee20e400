from __future__ import annotations

import uuid
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field

from genloop.common.config import GenerationConfig
from genloop.common.errors import ConfigError


class TextContent(BaseModel):
    kind: Literal["text"] = "text"
    value: str


class ImageContent(BaseModel):
    kind: Literal["image"] = "image"
    value: bytes


class AudioContent(BaseModel):
    kind: Literal["audio"] = "audio"
    value: bytes


MessageContent = Annotated[Union[TextContent, ImageContent, AudioContent], Field(discriminator="kind")]


class Message(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: Union[str, list[MessageContent]]
    prefix: bool = False

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        parts = []
        for part in self.content:
            if part.kind != "text":
                raise ConfigError(f"{part.kind} content is not supported by a text-only model")
            parts.append(part.value)
        return "".join(parts)


class InferenceRequest(BaseModel):
    """One generation request: a prompt (plain text or a message history) plus its config."""

    prompt: Union[str, list[Message]]
    config: Optional[GenerationConfig] = None  # None: session defaults
    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    stream: bool = False

    @property
    def is_chat(self) -> bool:
        return not isinstance(self.prompt, str)
