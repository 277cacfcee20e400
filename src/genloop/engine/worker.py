from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from genloop.common.errors import GenerationError
from genloop.engine.request import InferenceRequest
from genloop.engine.session import LanguageModel

logger = logging.getLogger(__name__)


@dataclass
class WorkItem:
    request: InferenceRequest

    future: asyncio.Future | None = None
    out_q: asyncio.Queue | None = None # queue of dict messages (token/done/error)
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    enqueued_at_s: float = field(default_factory=time.perf_counter)


class GenerationWorker:
    """
    Serves requests against one LanguageModel, one at a time:
      - pulls WorkItems from an asyncio queue in arrival order
      - runs each GenerationLoop iteration by iteration, yielding to the event
        loop in between so cancellation and other coroutines get a turn
      - streams deltas to ``out_q`` or resolves ``future`` with the result
    """

    def __init__(self, session: LanguageModel, *, max_queue_depth: int = 32):
        self.session = session
        self.max_queue_depth = max_queue_depth

        self._q: asyncio.Queue[WorkItem] = asyncio.Queue(maxsize=max_queue_depth)
        self._task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        self._current: Optional[WorkItem] = None

    async def start(self):
        if self._task is not None:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        """Cancel the serving task and fail every request it will no longer serve."""
        interrupted = self._current
        if self._task is not None:
            self._stop.set()
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        stopped = GenerationError("worker stopped")
        if interrupted is not None:
            await self._publish_error(interrupted, stopped)
        while not self._q.empty():
            item = self._q.get_nowait()
            await self._publish_error(item, stopped)
            self._q.task_done()

    async def enqueue(self, item: WorkItem):
        await self._q.put(item)

    @staticmethod
    def _item_cancelled(item: WorkItem) -> bool:
        return item.cancel.is_set() or (item.future is not None and item.future.cancelled())

    async def _publish_error(self, item: WorkItem, e: Exception):
        if item.request.stream and item.out_q is not None:
            msg = {"type": "error", "message": str(e)}
            if isinstance(e, GenerationError):
                msg["error"] = e.label
            await item.out_q.put(msg)
            return
        if item.future is not None and not item.future.done():
            item.future.set_exception(e)

    async def _publish_done(self, item: WorkItem, result):
        if item.request.stream and item.out_q is not None:
            await item.out_q.put(
                {
                    "type": "done",
                    "finish_reason": result.finish_reason,
                    "token_ids": result.token_ids,
                    "timing": result.timing(),
                }
            )
            return
        if item.future is not None and not item.future.done():
            item.future.set_result(result)

    async def _process(self, item: WorkItem):
        # each request carries its own context; nothing is shared between callers
        loop = self.session.start(
            item.request.prompt, item.request.config, cancel=item.cancel, use_history=False
        )
        for step in loop.iter_steps():
            if self._item_cancelled(item):
                item.cancel.set()
            if step.text and item.request.stream and item.out_q is not None:
                await item.out_q.put({"type": "token", "token_id": step.token_id, "text": step.text})
            await asyncio.sleep(0)
        await self._publish_done(item, loop.result())

    async def _loop(self):
        while not self._stop.is_set():
            item = await self._q.get()
            self._current = item
            try:
                if self._item_cancelled(item) and not item.request.stream:
                    continue
                queue_wait_ms = (time.perf_counter() - item.enqueued_at_s) * 1000.0
                logger.debug("dequeued %s after %.1f ms", item.request.request_id, queue_wait_ms)
                try:
                    await self._process(item)
                except Exception as e:
                    logger.error("request %s failed: %s", item.request.request_id, e, exc_info=True)
                    await self._publish_error(item, e)
            finally:
                self._current = None
                self._q.task_done()
