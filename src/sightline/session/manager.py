"""
Inference Session Manager
=========================

Owns the single stateful inference session and its lifecycle.

Responsibilities:
    - Serialize requests: at most one generation in flight
    - Token budget: proactive reset once reset_threshold inferences have
      completed on the current context
    - Reactive recovery: on a context-overflow error, rebuild the session and
      retry once (explicit bounded loop)
    - Cooldown: ordinary resets are refused within reset_cooldown_seconds of
      the previous rebuild and while a generation is executing
    - Forced reset for the watchdog (ignores cooldown and the executing flag)

Streaming contract:
    submit() is an async generator of StreamChunk. It yields PARTIAL chunks
    as the model produces them and ends with exactly one final chunk:
    COMPLETE (text = full response), ERROR, BUSY or NOT_READY.

No other component holds a reference to the runtime session.
"""

import asyncio
import logging
import time
from typing import AsyncIterator, Callable, Optional

import numpy as np

from sightline.config import GenerationConfig, SessionConfig
from sightline.errors import SessionInitializationError
from sightline.models.requests import ChunkStatus, StreamChunk
from sightline.models.state import SessionSnapshot, SessionState
from sightline.quality.image_ops import center_crop_square
from sightline.session.runtime import (
    GenerationParams,
    ModelRuntime,
    RuntimeSession,
    is_context_overflow,
)


logger = logging.getLogger(__name__)


PROCESSING_ERROR_MESSAGE = "Processing error occurred"
EMPTY_RESPONSE_MESSAGE = "No response generated"
BUSY_MESSAGE = "Already processing"
NOT_READY_MESSAGE = "Model not ready"


class InferenceSessionManager:
    """
    Lifecycle owner of the inference session.

    Attributes:
        state: Current SessionState
        generation: Number of session (re)builds so far
        inference_count: Completed inferences on the current context
        error_count: Terminal errors since the last rebuild

    Example:
        manager = InferenceSessionManager(MockModelRuntime())
        await manager.initialize()

        async for chunk in manager.submit(prompt, image):
            if chunk.is_final:
                print(chunk.status, chunk.text)
    """

    def __init__(
        self,
        runtime: ModelRuntime,
        config: Optional[SessionConfig] = None,
        generation: Optional[GenerationConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize session manager.

        Args:
            runtime: Model runtime used to open sessions
            config: Reset threshold, cooldown, retry and token budget
            generation: Fixed sampling parameters
            clock: Monotonic clock (seconds), injectable for tests
        """
        self._runtime = runtime
        self._config = config or SessionConfig()
        gen = generation or GenerationConfig()
        self._params = GenerationParams(
            top_k=gen.top_k,
            top_p=gen.top_p,
            temperature=gen.temperature,
            random_seed=gen.random_seed,
        )
        self._clock = clock

        self._session: Optional[RuntimeSession] = None
        self._state: SessionState = SessionState.IDLE
        self._generation: int = 0
        self._inference_count: int = 0
        self._error_count: int = 0
        self._executing: bool = False
        self._execution_seq: int = 0
        self._busy_since: Optional[float] = None
        self._last_reset_at: Optional[float] = None
        self._needs_recreation: bool = False
        self._last_error: Optional[str] = None
        self._critical_error: Optional[str] = None

        logger.info(
            f"InferenceSessionManager created: reset_threshold={self._config.reset_threshold}, "
            f"cooldown={self._config.reset_cooldown_seconds}s, "
            f"max_retries={self._config.max_retries}"
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def inference_count(self) -> int:
        return self._inference_count

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def is_executing(self) -> bool:
        return self._executing

    @property
    def is_ready(self) -> bool:
        return self._state is SessionState.READY and not self._executing

    @property
    def busy_since(self) -> Optional[float]:
        return self._busy_since

    @property
    def needs_recreation(self) -> bool:
        return self._needs_recreation

    @property
    def critical_error(self) -> Optional[str]:
        return self._critical_error

    @property
    def tokens_used(self) -> int:
        """Estimated tokens consumed on the current context."""
        return self._inference_count * self._config.tokens_per_inference

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self._state,
            generation=self._generation,
            inference_count=self._inference_count,
            error_count=self._error_count,
            executing=self._executing,
            tokens_used=self.tokens_used,
            last_reset_at=self._last_reset_at,
            last_error=self._last_error,
            critical_error=self._critical_error,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Open the first session (or retry after a fatal failure).

        Raises:
            SessionInitializationError: If the runtime cannot open a session.
                The manager stays in ERROR until initialize() is called again.
        """
        if self._state in (SessionState.BUSY, SessionState.RECOVERING, SessionState.INITIALIZING):
            logger.warning(f"initialize() ignored in state {self._state.value}")
            return

        self._state = SessionState.INITIALIZING
        self._critical_error = None
        logger.info("Initializing inference session")

        try:
            session = await asyncio.to_thread(self._runtime.open_session, self._params)
        except asyncio.CancelledError:
            self._state = SessionState.IDLE
            raise
        except Exception as e:
            self._session = None
            self._state = SessionState.ERROR
            self._critical_error = f"Failed to initialize vision system: {e}"
            logger.critical(self._critical_error)
            raise SessionInitializationError(self._critical_error) from e

        self._install(session)
        self._state = SessionState.READY
        logger.info(f"Inference session ready (generation {self._generation})")

    async def reset(self) -> bool:
        """
        Rebuild the session from scratch.

        No-op while a generation is executing, inside the cooldown window,
        or outside READY.

        Returns:
            True if the session was rebuilt.
        """
        if self._executing:
            logger.warning("Cannot reset session: inference executing")
            return False

        if self._state is not SessionState.READY:
            logger.warning(f"Cannot reset session in state {self._state.value}")
            return False

        now = self._clock()
        if (
            self._last_reset_at is not None
            and now - self._last_reset_at < self._config.reset_cooldown_seconds
        ):
            logger.info(
                f"Reset skipped: cooldown ({now - self._last_reset_at:.1f}s since last reset)"
            )
            return False

        return await self._rebuild("reset")

    async def force_reset(self) -> bool:
        """
        Rebuild the session regardless of cooldown or in-flight work.

        Any in-flight generation is abandoned; its stream no longer touches
        manager state.
        """
        logger.warning(
            f"Forcing session reset (state={self._state.value}, executing={self._executing})"
        )
        self._abandon_execution()
        return await self._rebuild("forced")

    def mark_for_recreation(self) -> None:
        """Rebuild the session before the next generation."""
        self._needs_recreation = True

    def abandon(self) -> None:
        """
        Give up on the in-flight generation (wall-clock timeout).

        The session is forced back to READY; the abandoned stream no longer
        touches manager state.
        """
        if self._executing:
            logger.warning("Abandoning in-flight inference")
        self._abandon_execution()
        if self._state is SessionState.BUSY:
            self._state = SessionState.READY

    def _abandon_execution(self) -> None:
        self._execution_seq += 1
        self._executing = False
        self._busy_since = None

    def _install(self, session: RuntimeSession) -> None:
        self._session = session
        self._generation += 1
        self._inference_count = 0
        self._error_count = 0
        self._needs_recreation = False

    async def _rebuild(self, reason: str) -> bool:
        previous = self._state
        self._state = SessionState.RECOVERING
        logger.info(
            f"Rebuilding session ({reason}): inference_count={self._inference_count}, "
            f"error_count={self._error_count}"
        )

        # Old context is discarded whole
        self._session = None
        try:
            session = await asyncio.to_thread(self._runtime.open_session, self._params)
        except asyncio.CancelledError:
            # Abandoned mid-rebuild; the next generation opens a fresh session
            self._needs_recreation = True
            self._state = SessionState.BUSY if self._executing else SessionState.READY
            raise
        except Exception as e:
            self._state = SessionState.ERROR
            self._last_error = str(e)
            self._critical_error = f"Failed to rebuild inference session: {e}"
            logger.critical(self._critical_error)
            return False

        self._install(session)
        self._last_reset_at = self._clock()
        self._state = SessionState.BUSY if self._executing else SessionState.READY
        logger.info(
            f"Session rebuilt ({reason}): generation {self._generation}, "
            f"previous state {previous.value}"
        )
        return True

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    async def submit(
        self,
        prompt: str,
        image: Optional[np.ndarray] = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Run one inference and stream its output.

        Args:
            prompt: Full prompt text
            image: Optional BGR image (center-cropped to square here)

        Yields:
            PARTIAL chunks, then exactly one final chunk
        """
        if self._executing:
            logger.warning("Rejecting submit: inference already executing")
            yield StreamChunk.terminal(ChunkStatus.BUSY, BUSY_MESSAGE)
            return

        if self._state is not SessionState.READY:
            logger.warning(f"Rejecting submit: session {self._state.value}")
            yield StreamChunk.terminal(ChunkStatus.NOT_READY, NOT_READY_MESSAGE)
            return

        if self._inference_count >= self._config.reset_threshold:
            logger.info(
                f"Inference count {self._inference_count} reached "
                f"{self._config.reset_threshold}, resetting context before new image"
            )
            await self.reset()

            # The reset awaited; re-check ownership
            if self._executing:
                yield StreamChunk.terminal(ChunkStatus.BUSY, BUSY_MESSAGE)
                return
            if self._state is not SessionState.READY:
                yield StreamChunk.terminal(ChunkStatus.NOT_READY, NOT_READY_MESSAGE)
                return

        self._executing = True
        self._execution_seq += 1
        seq = self._execution_seq
        self._state = SessionState.BUSY
        self._busy_since = self._clock()

        prepared = center_crop_square(image) if image is not None else None

        try:
            async for chunk in self._execute(prompt, prepared, seq):
                yield chunk
        finally:
            if seq == self._execution_seq:
                self._executing = False
                self._busy_since = None
                if self._state is SessionState.BUSY:
                    self._state = SessionState.READY

    async def _execute(
        self,
        prompt: str,
        image: Optional[np.ndarray],
        seq: int,
    ) -> AsyncIterator[StreamChunk]:
        max_attempts = 1 + self._config.max_retries
        attempt = 0

        while True:
            attempt += 1

            if self._needs_recreation:
                if not await self._rebuild("recreation"):
                    yield self._fail(attempt, "session rebuild failed")
                    return

            parts = []
            try:
                async for piece in self._session.generate(prompt, image):
                    if seq != self._execution_seq:
                        # Abandoned by timeout or forced reset
                        return
                    parts.append(piece)
                    yield StreamChunk(text=piece, attempt=attempt)
            except Exception as e:
                if seq != self._execution_seq:
                    return
                self._last_error = str(e)
                if is_context_overflow(e) and attempt < max_attempts:
                    logger.warning(
                        f"Context overflow on attempt {attempt}/{max_attempts}: {e}. "
                        f"Recreating session and retrying"
                    )
                    self.mark_for_recreation()
                    continue
                logger.error(f"Inference failed on attempt {attempt}: {e}")
                yield self._fail(attempt, str(e))
                return

            break

        self._inference_count += 1
        response = "".join(parts)
        if not response.strip():
            response = EMPTY_RESPONSE_MESSAGE
        logger.info(
            f"Inference complete (count {self._inference_count}/"
            f"{self._config.reset_threshold}, attempt {attempt}): {response!r}"
        )
        yield StreamChunk.terminal(ChunkStatus.COMPLETE, response, attempt)

    def _fail(self, attempt: int, reason: str) -> StreamChunk:
        self._error_count += 1
        if self._error_count >= self._config.max_errors:
            logger.warning(
                f"Error count {self._error_count} reached {self._config.max_errors}, "
                f"session will be recreated"
            )
            self._needs_recreation = True
        logger.debug(f"Terminal error chunk: {reason}")
        return StreamChunk.terminal(ChunkStatus.ERROR, PROCESSING_ERROR_MESSAGE, attempt)
