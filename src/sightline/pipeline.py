"""
Perception Pipeline
===================

Wires the perception core together and drives the fixed tick.

    camera frames -> FrameEvaluator -> AdmissionBuffer (+ SceneChangeDetector)
        -> ModeQueueController -> InferenceSessionManager -> SpeechOutput

Collaborator entry points:
    offer_frame()     capture source (never blocks)
    tap()             user trigger
    ask()             completed user utterance
    speech_output()   (partial_text, is_final) stream

Example:
    pipeline = PerceptionPipeline(load_config(), MockModelRuntime())
    await pipeline.start()
    task = asyncio.create_task(pipeline.run())

    pipeline.offer_frame(image, captured_at=time.monotonic())
    ...
    await pipeline.stop()
    await task
"""

import asyncio
import logging
import time
from typing import AsyncIterator, Callable, Optional

import numpy as np

from sightline.admission.buffer import AdmissionBuffer, AdmissionResult
from sightline.admission.scene import SceneChangeDetector
from sightline.config import Settings, load_config
from sightline.control.controller import ModeQueueController
from sightline.control.speech import SpeechOutput, Utterance
from sightline.control.watchdog import Watchdog
from sightline.errors import ImageDecodeError
from sightline.models.frame import FrameSample
from sightline.models.reason_codes import RequestOutcome
from sightline.quality.evaluator import FrameEvaluator, QualityThresholds
from sightline.quality.image_ops import correct_orientation, decode_image, ensure_bgr
from sightline.session.manager import InferenceSessionManager
from sightline.session.runtime import MockModelRuntime, ModelRuntime


logger = logging.getLogger(__name__)


# =============================================================================
# Runtime Factory
# =============================================================================

def create_runtime(settings: Settings) -> ModelRuntime:
    """
    Create model runtime based on config.

    Fails fast on an unknown backend.
    """
    backend = settings.runtime.backend

    if backend == "mock":
        logger.info("Using MockModelRuntime")
        return MockModelRuntime(
            max_tokens=settings.session.max_tokens,
            tokens_per_inference=settings.session.tokens_per_inference,
            chunk_delay=settings.runtime.mock.chunk_delay_seconds,
        )

    raise ValueError(f"Unknown runtime backend: {backend}")


class PipelineMetrics:
    """Frame intake metrics."""

    __slots__ = ("frames_offered", "frames_accepted", "frames_rate_limited", "decode_errors")

    def __init__(self) -> None:
        self.frames_offered: int = 0
        self.frames_accepted: int = 0
        self.frames_rate_limited: int = 0
        self.decode_errors: int = 0

    def to_dict(self) -> dict:
        return {name: getattr(self, name) for name in self.__slots__}


class PerceptionPipeline:
    """
    Owner of every core component.

    Attributes:
        settings: Loaded configuration
        evaluator: Frame scorer
        buffer: Admission buffer
        session: Inference session manager
        watchdog: Stuck-state detector
        speech: Speech output channel
        controller: Mode & queue controller
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        runtime: Optional[ModelRuntime] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or load_config()
        s = self.settings
        self._clock = clock

        self.evaluator = FrameEvaluator(
            QualityThresholds(
                sharpness_floor=s.quality.sharpness_floor,
                brightness_floor=s.quality.brightness_floor,
                motion_blur_threshold=s.quality.motion_blur_threshold,
            )
        )
        self.detector = SceneChangeDetector(threshold=s.scene.change_threshold)
        self.buffer = AdmissionBuffer(
            capacity=s.admission.buffer_capacity,
            detector=self.detector,
        )
        self.session = InferenceSessionManager(
            runtime or create_runtime(s),
            config=s.session,
            generation=s.generation,
            clock=clock,
        )
        self.watchdog = Watchdog(stuck_timeout=s.watchdog.stuck_timeout_seconds)
        self.speech = SpeechOutput()
        self.controller = ModeQueueController(
            self.session,
            self.buffer,
            self.watchdog,
            speech=self.speech,
            config=s.control,
            inference_timeout=s.watchdog.inference_timeout_seconds,
            latest_frame=lambda: self._latest,
            clock=clock,
        )

        self._latest: Optional[FrameSample] = None
        self._last_accepted_at: Optional[float] = None
        self._running: bool = False
        self._stop_event: asyncio.Event = asyncio.Event()

        self.metrics = PipelineMetrics()

    @property
    def latest_frame(self) -> Optional[FrameSample]:
        return self._latest

    @property
    def running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Collaborator entry points
    # -------------------------------------------------------------------------

    def offer_frame(
        self,
        image: np.ndarray,
        captured_at: Optional[float] = None,
        orientation: int = 0,
    ) -> Optional[FrameSample]:
        """
        Accept a captured frame.

        Frames closer than min_frame_interval_seconds to the previously
        accepted one are skipped. Never blocks on inference.

        Args:
            image: Captured pixels (gray, BGR or BGRA uint8)
            captured_at: Capture timestamp; defaults to the pipeline clock
            orientation: Clockwise rotation needed to make the image upright

        Returns:
            The scored sample, or None if the frame was skipped.
        """
        self.metrics.frames_offered += 1
        now = self._clock() if captured_at is None else captured_at

        if (
            self._last_accepted_at is not None
            and now - self._last_accepted_at < self.settings.admission.min_frame_interval_seconds
        ):
            self.metrics.frames_rate_limited += 1
            return None

        upright = correct_orientation(ensure_bgr(image), orientation)
        sample = self.evaluator.evaluate(upright, now)

        self._latest = sample
        self._last_accepted_at = now
        self.metrics.frames_accepted += 1
        self.buffer.push(sample)
        return sample

    def offer_encoded(
        self,
        data: bytes,
        captured_at: Optional[float] = None,
        orientation: int = 0,
    ) -> Optional[FrameSample]:
        """Accept an encoded (JPEG/PNG) frame. Undecodable frames are skipped."""
        try:
            image = decode_image(data)
        except ImageDecodeError as e:
            self.metrics.decode_errors += 1
            logger.warning(f"Dropping undecodable frame: {e}")
            return None
        return self.offer_frame(image, captured_at=captured_at, orientation=orientation)

    def tap(self) -> None:
        """User trigger: start a question."""
        self.controller.trigger()

    def ask(self, question: str) -> RequestOutcome:
        """Question text ready (one completed utterance) about the latest frame."""
        return self.controller.question_ready(question, self._latest)

    def speech_output(self) -> AsyncIterator[Utterance]:
        return self.speech.stream()

    # -------------------------------------------------------------------------
    # Run loop
    # -------------------------------------------------------------------------

    async def start(self) -> bool:
        """Initialize the inference session."""
        return await self.controller.start()

    async def tick(self) -> AdmissionResult:
        return await self.controller.tick()

    async def run(self) -> None:
        """
        Tick at the configured interval until stop() is called.
        """
        self._running = True
        self._stop_event.clear()
        interval = self.settings.admission.tick_interval_seconds

        logger.info(f"Pipeline running, tick every {interval}s")

        while self._running:
            await self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

        logger.info("Pipeline stopped")

    async def stop(self) -> None:
        """Stop ticking and abandon in-flight work."""
        logger.info("Pipeline stopping...")
        self._running = False
        self._stop_event.set()
        await self.controller.shutdown()

    def status(self) -> dict:
        """Snapshot of every component for observability."""
        return {
            "mode": self.controller.mode.value,
            "paused": self.controller.paused,
            "session": self.session.snapshot().model_dump(mode="json"),
            "buffer": self.buffer.metrics(),
            "controller": self.controller.metrics.to_dict(),
            "intake": self.metrics.to_dict(),
            "passive_queue": self.controller.passive_queue_size,
            "pending_active": self.controller.pending_active is not None,
        }
