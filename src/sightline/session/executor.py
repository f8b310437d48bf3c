"""
Dedicated Inference Executor
============================

Adapts a blocking model backend to the async RuntimeSession contract.

Blocking backends (native bindings that generate on the calling thread)
run on a single dedicated worker thread that is never shared with frame
capture or the event loop. Each streamed chunk is handed back to the
event loop as a message; no backend state is touched from the loop.

A native call cannot be interrupted. When a session is opened while the
previous session's call is still running (it was abandoned by a timeout or
the watchdog), the stuck worker is left behind and a fresh one is started.
"""

import asyncio
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import AsyncIterator, Iterator, Optional, Protocol

import numpy as np

from sightline.session.runtime import GenerationParams


logger = logging.getLogger(__name__)


_DONE = object()


class BlockingSession(Protocol):
    """Backend session whose generate() blocks and returns an iterator."""

    def generate(self, prompt: str, image: Optional[np.ndarray] = None) -> Iterator[str]:
        ...


class BlockingRuntime(Protocol):
    """Backend runtime opening blocking sessions."""

    def open_session(self, params: GenerationParams) -> BlockingSession:
        ...


class ThreadedRuntimeSession:
    """RuntimeSession that pulls chunks from a blocking session on the worker."""

    def __init__(self, session: BlockingSession, pool: ThreadPoolExecutor) -> None:
        self._session = session
        self._pool = pool
        self._pending: Optional[Future] = None

    @property
    def worker_busy(self) -> bool:
        """A backend call submitted by this session has not returned yet."""
        return self._pending is not None and not self._pending.done()

    async def _call(self, fn, *args):
        self._pending = self._pool.submit(fn, *args)
        return await asyncio.wrap_future(self._pending)

    async def generate(
        self,
        prompt: str,
        image: Optional[np.ndarray] = None,
    ) -> AsyncIterator[str]:
        iterator = await self._call(lambda: iter(self._session.generate(prompt, image)))
        while True:
            chunk = await self._call(next, iterator, _DONE)
            if chunk is _DONE:
                return
            yield chunk


class BlockingRuntimeAdapter:
    """
    ModelRuntime wrapper for blocking backends.

    Example:
        runtime = BlockingRuntimeAdapter(NativeLlmRuntime(model_path))
        manager = InferenceSessionManager(runtime)
        ...
        runtime.shutdown()
    """

    def __init__(self, runtime: BlockingRuntime) -> None:
        self._runtime = runtime
        self._pool = self._new_pool()
        self._current: Optional[ThreadedRuntimeSession] = None
        self.workers_replaced: int = 0

    @staticmethod
    def _new_pool() -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix="inference")

    def open_session(self, params: GenerationParams) -> ThreadedRuntimeSession:
        if self._current is not None and self._current.worker_busy:
            logger.warning("Inference worker stuck in an abandoned call, starting a new one")
            self._pool.shutdown(wait=False, cancel_futures=True)
            self._pool = self._new_pool()
            self.workers_replaced += 1

        session = ThreadedRuntimeSession(self._runtime.open_session(params), self._pool)
        self._current = session
        return session

    def shutdown(self, wait: bool = False) -> None:
        """Stop the worker thread. An abandoned generation is not waited for."""
        logger.info("Shutting down inference executor")
        self._pool.shutdown(wait=wait, cancel_futures=True)
