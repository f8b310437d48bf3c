"""
Test Configuration
==================

Pytest fixtures and test doubles for Sightline.
"""

import asyncio
import itertools
import threading
from typing import List, Optional

import numpy as np
import pytest

from sightline.errors import RuntimeUnavailableError
from sightline.models.frame import FrameSample


# Script steps understood by ScriptedRuntime besides plain response text
HANG = object()
GATE = object()


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedSession:
    def __init__(self, runtime: "ScriptedRuntime", number: int) -> None:
        self._runtime = runtime
        self.number = number

    async def generate(self, prompt: str, image: Optional[np.ndarray] = None):
        rt = self._runtime
        rt.calls.append((self.number, prompt, image))
        step = rt.script.pop(0) if rt.script else rt.default

        rt.active += 1
        rt.max_active = max(rt.max_active, rt.active)
        try:
            if isinstance(step, BaseException):
                raise step
            if step is HANG:
                await asyncio.Event().wait()
            if step is GATE:
                await rt.gate.wait()
                step = rt.default
            words = step.split(" ") if step else []
            for i, word in enumerate(words):
                await asyncio.sleep(rt.delay)
                yield word if i == 0 else f" {word}"
        finally:
            rt.active -= 1


class ScriptedRuntime:
    """
    Model runtime whose generate() calls follow a script.

    Each call pops the next step: response text, an exception instance to
    raise, HANG (never returns) or GATE (waits for runtime.gate).
    When open_gate is set to a threading.Event, open_session() blocks on it.
    """

    def __init__(
        self,
        script: Optional[list] = None,
        default: str = "CLEAR AHEAD",
        delay: float = 0.0,
        fail_open: bool = False,
    ) -> None:
        self.script = list(script or [])
        self.default = default
        self.delay = delay
        self.fail_open = fail_open
        self.opened: int = 0
        self.params = None
        self.calls: List[tuple] = []
        self.active: int = 0
        self.max_active: int = 0
        self.gate = asyncio.Event()
        self.open_gate: Optional[threading.Event] = None

    def open_session(self, params) -> ScriptedSession:
        if self.open_gate is not None:
            self.open_gate.wait()
        if self.fail_open:
            raise RuntimeUnavailableError("model file missing")
        self.opened += 1
        self.params = params
        return ScriptedSession(self, self.opened)


_frame_ids = itertools.count(1)


def make_sample(
    fast_hash: int = 1,
    perceptual_hash: int = 0,
    sharpness: float = 100.0,
    brightness: float = 0.5,
    size: int = 120,
) -> FrameSample:
    """FrameSample with chosen scores (pixels are a blank placeholder)."""
    image = np.zeros((size, size, 3), dtype=np.uint8)
    image.setflags(write=False)
    return FrameSample(
        frame_id=next(_frame_ids),
        captured_at=0.0,
        image=image,
        sharpness=sharpness,
        brightness=brightness,
        fast_hash=fast_hash,
        perceptual_hash=perceptual_hash,
    )


def noise_image(seed: int = 0, size: int = 200) -> np.ndarray:
    """Sharp, mid-brightness BGR texture."""
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(size, size, 3), dtype=np.uint8)


async def settle(rounds: int = 20) -> None:
    """Let pending tasks run up to their next real suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def collect(stream) -> list:
    return [chunk async for chunk in stream]


@pytest.fixture
def clock():
    return FakeClock(start=1000.0)


@pytest.fixture
def runtime():
    return ScriptedRuntime()


@pytest.fixture
def sample_factory():
    return make_sample
