from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from genloop.common.config import GenerationConfig, ModelConfig
from genloop.common.errors import ConfigError, GenerationError
from genloop.engine.request import InferenceRequest, Message
from genloop.engine.session import LanguageModel
from genloop.engine.worker import GenerationWorker, WorkItem


class GenerateRequest(BaseModel):
    prompt: Optional[str] = None
    messages: Optional[list[Message]] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_k: Optional[int] = None
    top_p: Optional[float] = None
    repetition_penalty: float = 1.0
    repeat_last_n: Optional[int] = None
    seed: Optional[int] = None
    stop_token_ids: Optional[list[int]] = None
    use_kv_cache: bool = True
    stream: bool = False

    def prompt_input(self) -> Union[str, list[Message]]:
        if (self.prompt is None) == (self.messages is None):
            raise ConfigError("exactly one of 'prompt' or 'messages' is required")
        return self.prompt if self.prompt is not None else self.messages

    def generation_config(self, session: LanguageModel) -> GenerationConfig:
        defaults = session.default_config()
        options = self.model_dump(
            exclude={"prompt", "messages", "stream"},
            exclude_none=True,
        )
        if "stop_token_ids" in options:
            options["stop_token_ids"] = frozenset(options["stop_token_ids"])
        merged = defaults.model_dump()
        merged.update(options)
        return GenerationConfig.from_options(**merged)


def _http_error(e: GenerationError) -> HTTPException:
    status = 422 if isinstance(e, ConfigError) else 500
    return HTTPException(status_code=status, detail=e.to_dict())


def create_app(session: Optional[LanguageModel] = None, model_config: Optional[ModelConfig] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = session is None
        lm = session or LanguageModel.create(model_config)
        worker = GenerationWorker(lm)
        await worker.start()
        app.state.session = lm
        app.state.worker = worker
        try:
            yield
        finally:
            await worker.stop()
            if owned:
                lm.close()

    app = FastAPI(lifespan=lifespan)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/params")
    def params():
        return app.state.session.params().model_dump()

    @app.post("/generate")
    async def generate(req: GenerateRequest):
        lm: LanguageModel = app.state.session
        try:
            prompt = req.prompt_input()
            config = req.generation_config(lm)
        except ConfigError as e:
            raise _http_error(e)

        if req.stream:
            out_q: asyncio.Queue = asyncio.Queue()
            request = InferenceRequest(prompt=prompt, config=config, stream=True)
            item = WorkItem(request=request, out_q=out_q)
            await app.state.worker.enqueue(item)

            async def events():
                try:
                    while True:
                        msg = await out_q.get()
                        yield json.dumps(msg) + "\n"
                        if msg["type"] in ("done", "error"):
                            break
                finally:
                    item.cancel.set()

            return StreamingResponse(events(), media_type="application/x-ndjson")

        fut = asyncio.get_running_loop().create_future()
        item = WorkItem(request=InferenceRequest(prompt=prompt, config=config), future=fut)
        await app.state.worker.enqueue(item)
        try:
            result = await fut
        except GenerationError as e:
            raise _http_error(e)
        return {
            "text": result.text,
            "token_ids": result.token_ids,
            "finish_reason": result.finish_reason,
            "timing": result.timing(),
        }

    return app


app = create_app()
