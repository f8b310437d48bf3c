"""
Model Runtime Contract
======================

Black-box abstraction of the on-device multimodal model.

The session manager's reset/retry logic is defined entirely against this
contract:

    runtime.open_session(params) -> RuntimeSession
    session.generate(prompt, image) -> AsyncIterator[str]

A session accumulates context across calls. generate() may raise an error
of the context-overflow class once the context window is exhausted; the
only remedy is to discard the session and open a new one.

This interface is implemented by:
    - MockModelRuntime (deterministic, simulates the token budget)
    - BlockingRuntimeAdapter (wraps a blocking backend, see executor.py)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol, Sequence

import numpy as np

from sightline.errors import ContextOverflowError, RuntimeUnavailableError


logger = logging.getLogger(__name__)


# Message fragments that identify context/step exhaustion in backend errors
OVERFLOW_SIGNATURES = (
    "OUT_OF_RANGE",
    "exceed context window",
    "current_step",
)


@dataclass(frozen=True, slots=True)
class GenerationParams:
    """
    Fixed sampling parameters for a session.

    Deterministic, conservative defaults: low temperature, restrictive
    nucleus sampling and a fixed seed.
    """

    top_k: int = 30
    top_p: float = 0.8
    temperature: float = 0.6
    random_seed: int = 101
    enable_vision: bool = True
    max_images: int = 1


def is_context_overflow(error: BaseException) -> bool:
    """True when an error belongs to the context/step exhaustion class."""
    if isinstance(error, ContextOverflowError):
        return True
    message = str(error)
    return any(signature in message for signature in OVERFLOW_SIGNATURES)


class RuntimeSession(Protocol):
    """One stateful generation context."""

    def generate(
        self,
        prompt: str,
        image: Optional[np.ndarray] = None,
    ) -> AsyncIterator[str]:
        """
        Stream text chunks for prompt (and optional image).

        Raises:
            ContextOverflowError: (or a matching message) when the
                context window is exhausted
        """
        ...


class ModelRuntime(Protocol):
    """Loaded model able to open sessions."""

    def open_session(self, params: GenerationParams) -> RuntimeSession:
        """
        Open a fresh session with empty context.

        Raises:
            RuntimeUnavailableError: If the model cannot serve sessions
        """
        ...


# =============================================================================
# Mock Runtime
# =============================================================================

DEFAULT_ALERTS = (
    "CLEAR AHEAD",
    "Left step down",
    "CAUTION person ahead",
    "Right CLEAR",
    "CAUTION bicycle left",
    "Low branch ahead",
)


class MockRuntimeSession:
    """
    Deterministic session that charges a fixed token cost per call.

    Attributes:
        tokens_used: Context tokens consumed so far
        calls: Number of generate() calls started
    """

    def __init__(self, runtime: "MockModelRuntime", params: GenerationParams) -> None:
        self._runtime = runtime
        self.params = params
        self.tokens_used: int = 0
        self.calls: int = 0

    async def generate(
        self,
        prompt: str,
        image: Optional[np.ndarray] = None,
    ) -> AsyncIterator[str]:
        self.calls += 1
        cost = self._runtime.tokens_per_inference
        if self.tokens_used + cost > self._runtime.max_tokens:
            raise ContextOverflowError(
                f"OUT_OF_RANGE: request would exceed context window "
                f"({self.tokens_used} + {cost} > {self._runtime.max_tokens})"
            )
        self.tokens_used += cost

        text = self._runtime.next_response(prompt)
        words = text.split(" ")
        for i, word in enumerate(words):
            if self._runtime.chunk_delay > 0:
                await asyncio.sleep(self._runtime.chunk_delay)
            yield word if i == 0 else f" {word}"


class MockModelRuntime:
    """
    Deterministic mock model runtime for testing and simulation.

    Responses cycle through a fixed list (seeded by the session's random
    seed) so runs are reproducible. The context window is simulated:
    every call costs tokens_per_inference tokens, and a call that would
    exceed max_tokens raises ContextOverflowError.

    Attributes:
        max_tokens: Simulated context window
        tokens_per_inference: Cost charged per generate() call
        chunk_delay: Seconds between streamed words
        available: When False, open_session() fails (fatal init path)
        sessions_opened: Number of sessions opened so far
        session: The most recently opened session (older ones are discarded)
    """

    def __init__(
        self,
        max_tokens: int = 2048,
        tokens_per_inference: int = 400,
        chunk_delay: float = 0.0,
        responses: Sequence[str] = DEFAULT_ALERTS,
        available: bool = True,
    ) -> None:
        if not responses:
            raise ValueError("responses must not be empty")

        self.max_tokens = max_tokens
        self.tokens_per_inference = tokens_per_inference
        self.chunk_delay = chunk_delay
        self.available = available
        self.sessions_opened: int = 0
        self.session: Optional[MockRuntimeSession] = None

        self._responses = list(responses)
        self._cursor: int = 0

        logger.info(
            f"MockModelRuntime initialized: max_tokens={max_tokens}, "
            f"tokens_per_inference={tokens_per_inference}"
        )

    def open_session(self, params: GenerationParams) -> MockRuntimeSession:
        if not self.available:
            raise RuntimeUnavailableError("Mock model runtime is unavailable")

        if self.sessions_opened == 0:
            self._cursor = params.random_seed % len(self._responses)
        self.sessions_opened += 1
        session = MockRuntimeSession(self, params)
        self.session = session
        return session

    def next_response(self, prompt: str) -> str:
        text = self._responses[self._cursor % len(self._responses)]
        self._cursor += 1
        return text
