"""
Mode & Queue Controller
=======================

Arbitrates between background (passive) descriptions and user questions
(active requests) on top of a single-sequence inference session.

Guarantees:
    - At most one inference in flight system-wide
    - A pending active request always runs before queued passive requests,
      but never preempts an executing inference
    - At most one pending active request (last writer wins)
    - Pausing passive mode discards buffered and queued passive frames but
      cancels no in-flight inference
    - Every inference carries a wall-clock timeout

All state here is owned by the event loop; collaborators hand frames and
questions in through plain method calls.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, Optional

from sightline.admission.buffer import AdmissionBuffer, AdmissionResult
from sightline.admission.scene import scene_changed
from sightline.config import ControlConfig
from sightline.control.prompts import ACTIVE_TEMPLATE, PASSIVE_PROMPT, active_prompt
from sightline.control.speech import SpeechOutput
from sightline.control.validation import RequestValidator
from sightline.control.watchdog import Watchdog
from sightline.errors import RequestValidationError, SessionInitializationError
from sightline.models.frame import FrameSample
from sightline.models.reason_codes import RequestOutcome
from sightline.models.requests import (
    ActiveRequest,
    ChunkStatus,
    InferenceRequest,
    PassiveRequest,
    request_kind,
)
from sightline.models.state import Mode, SessionState
from sightline.session.manager import PROCESSING_ERROR_MESSAGE, InferenceSessionManager


logger = logging.getLogger(__name__)


TIMEOUT_MESSAGE = "Inference timed out"


class ControllerMetrics:
    """Metrics for controller observability."""

    __slots__ = (
        "inferences_started",
        "inferences_completed",
        "inferences_failed",
        "inferences_timed_out",
        "passive_queued",
        "passive_dropped",
        "active_rejected",
        "active_superseded",
        "watchdog_resets",
    )

    def __init__(self) -> None:
        self.inferences_started: int = 0
        self.inferences_completed: int = 0
        self.inferences_failed: int = 0
        self.inferences_timed_out: int = 0
        self.passive_queued: int = 0
        self.passive_dropped: int = 0
        self.active_rejected: int = 0
        self.active_superseded: int = 0
        self.watchdog_resets: int = 0

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {name: getattr(self, name) for name in self.__slots__}


class ModeQueueController:
    """
    Passive/active arbitration and request queueing.

    Attributes:
        mode: Current Mode
        paused: Whether passive admission is paused
        metrics: Operational metrics

    Example:
        controller = ModeQueueController(session, buffer, watchdog)
        await controller.start()

        # Every tick
        await controller.tick()

        # User interaction
        controller.trigger()
        controller.question_ready("what is in front of me", latest_frame)
    """

    def __init__(
        self,
        session: InferenceSessionManager,
        buffer: AdmissionBuffer,
        watchdog: Watchdog,
        speech: Optional[SpeechOutput] = None,
        config: Optional[ControlConfig] = None,
        inference_timeout: float = 15.0,
        latest_frame: Optional[Callable[[], Optional[FrameSample]]] = None,
        passive_prompt: str = PASSIVE_PROMPT,
        active_template: str = ACTIVE_TEMPLATE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize controller.

        Args:
            session: The single session manager (exclusively used here)
            buffer: Admission buffer (with its scene-change detector)
            watchdog: Stuck-state detector
            speech: Output channel for spoken alerts
            config: Validation limits and passive queue size
            inference_timeout: Wall-clock seconds per inference
            latest_frame: Provider of the newest captured frame, used to
                refresh a stale pending question
            passive_prompt: Prompt for background descriptions
            active_template: Template wrapping user questions
            clock: Monotonic clock (seconds), injectable for tests
        """
        self._session = session
        self._buffer = buffer
        self._watchdog = watchdog
        self._speech = speech or SpeechOutput()
        self._config = config or ControlConfig()
        self._validator = RequestValidator(self._config)
        self._inference_timeout = inference_timeout
        self._latest_frame = latest_frame
        self._passive_prompt = passive_prompt
        self._active_template = active_template
        self._clock = clock

        self._mode: Mode = Mode.PASSIVE
        self._paused: bool = False
        self._passive_queue: Deque[PassiveRequest] = deque()
        self._pending_active: Optional[ActiveRequest] = None
        self._inflight: Optional[asyncio.Task] = None
        self._current: Optional[InferenceRequest] = None
        self._announced_error: Optional[str] = None

        self.metrics = ControllerMetrics()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def mode(self) -> Mode:
        return self._mode

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def speech(self) -> SpeechOutput:
        return self._speech

    @property
    def session(self) -> InferenceSessionManager:
        return self._session

    @property
    def is_inference_running(self) -> bool:
        return self._inflight is not None

    @property
    def current_request(self) -> Optional[InferenceRequest]:
        return self._current

    @property
    def pending_active(self) -> Optional[ActiveRequest]:
        return self._pending_active

    @property
    def passive_queue_size(self) -> int:
        return len(self._passive_queue)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> bool:
        """
        Initialize the session.

        Returns:
            True if the session is ready. On a fatal failure the critical
            error is spoken and the session stays in ERROR.
        """
        try:
            await self._session.initialize()
        except SessionInitializationError as e:
            self._speech.publish(str(e), True)
            self._announced_error = self._session.critical_error
            return False
        self._announced_error = None
        return True

    async def retry_initialization(self) -> bool:
        """Explicit caller retry after a fatal initialization failure."""
        if self._session.state is not SessionState.ERROR:
            logger.info(f"No retry needed, session is {self._session.state.value}")
            return self._session.state is SessionState.READY
        logger.info("Retrying session initialization")
        ready = await self.start()
        if ready:
            self._drain()
        return ready

    async def wait_idle(self) -> None:
        """Wait until no inference is in flight (including queued follow-ups)."""
        while self._inflight is not None:
            await asyncio.gather(self._inflight, return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel in-flight work and drop everything queued."""
        task = self._inflight
        self._inflight = None
        self._current = None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            self._session.abandon()
        self._passive_queue.clear()
        self._pending_active = None
        self._buffer.clear()

    # -------------------------------------------------------------------------
    # Mode transitions
    # -------------------------------------------------------------------------

    def trigger(self) -> None:
        """
        User tap: start collecting a question.

        PASSIVE -> ACTIVE. Passive admission is paused and pending spoken
        output is cleared. While ACTIVE_BUSY the next question will
        supersede any pending one.
        """
        if self._mode is Mode.ACTIVE_BUSY:
            logger.info("Trigger while active inference running; next question will be held")
            return

        self._pause_passive()
        cleared = self._speech.clear()
        self._mode = Mode.ACTIVE
        logger.info(f"Mode -> ACTIVE (cleared {cleared} pending utterances)")

    def cancel_question(self) -> None:
        """User abandoned the question (e.g. empty utterance)."""
        if self._mode is Mode.ACTIVE:
            self._finish_active()

    def _pause_passive(self) -> None:
        self._paused = True
        discarded = self._buffer.clear()
        queued = len(self._passive_queue)
        self._passive_queue.clear()
        if discarded or queued:
            logger.info(
                f"Passive paused: discarded {discarded} buffered and {queued} queued frames"
            )

    def _finish_active(self) -> None:
        self._mode = Mode.PASSIVE
        self._paused = False
        logger.info("Mode -> PASSIVE")

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def question_ready(self, prompt: str, frame: Optional[FrameSample]) -> RequestOutcome:
        """
        A completed user utterance.

        Args:
            prompt: Recognized question text
            frame: Frame the question is about (usually the latest capture)

        Returns:
            RequestOutcome: STARTED, PENDING, SUPERSEDED or REJECTED
        """
        try:
            request = self._validator.validate_active(prompt, frame)
        except RequestValidationError as e:
            self.metrics.active_rejected += 1
            logger.warning(f"Active request rejected: {e}")
            self._speech.publish(f"Invalid request: {e}", True)
            if self._mode is Mode.ACTIVE:
                self._finish_active()
            return RequestOutcome.REJECTED

        if self._mode is Mode.PASSIVE:
            self.trigger()

        if self._session.state is SessionState.ERROR:
            # Held until retry_initialization(); tell the user why
            self._announce_critical(repeat=True)

        if not self._can_start():
            outcome = RequestOutcome.PENDING
            if self._pending_active is not None:
                self.metrics.active_superseded += 1
                outcome = RequestOutcome.SUPERSEDED
                logger.info("Pending active request superseded by newer question")
            self._pending_active = request
            logger.info(
                f"Active request held (session={self._session.state.value}, "
                f"running={request_kind(self._current)})"
            )
            return outcome

        self._start(request)
        return RequestOutcome.STARTED

    def submit_passive(self, frame: FrameSample) -> RequestOutcome:
        """
        Hand an admitted frame to the controller.

        Returns:
            RequestOutcome: STARTED, QUEUED, REJECTED or BUSY (paused)
        """
        if self._mode is not Mode.PASSIVE or self._paused:
            logger.debug("Passive request dropped: passive mode paused")
            return RequestOutcome.BUSY

        try:
            self._validator.validate_passive(frame)
        except RequestValidationError as e:
            logger.warning(f"Passive request rejected: {e}")
            return RequestOutcome.REJECTED

        request = PassiveRequest(frame)
        if self._can_start():
            self._start(request)
            return RequestOutcome.STARTED

        if len(self._passive_queue) >= self._config.passive_queue_size:
            self._passive_queue.popleft()
            self.metrics.passive_dropped += 1
            logger.warning("Passive queue full, dropped oldest request")
        self._passive_queue.append(request)
        self.metrics.passive_queued += 1
        logger.debug(f"Passive request queued ({len(self._passive_queue)} waiting)")
        return RequestOutcome.QUEUED

    async def tick(self) -> AdmissionResult:
        """
        One fixed-period tick: watchdog, admission, queue drain.

        Never blocks on inference; a busy session defers cleanly.
        """
        if self._watchdog.observe(self._session.state, self._clock()):
            await self._recover_stuck()

        result = self._buffer.tick(
            admitting=self._mode is Mode.PASSIVE and not self._paused,
            busy=self.is_inference_running,
        )
        if result.frame is not None:
            self.submit_passive(result.frame)

        self._drain()
        return result

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _can_start(self) -> bool:
        return self._inflight is None and self._session.is_ready

    def _drain(self) -> None:
        """Start at most one waiting request, active first."""
        if not self._can_start():
            return

        if self._pending_active is not None:
            request = self._refresh_if_stale(self._pending_active)
            self._pending_active = None
            logger.info("Resubmitting pending active request")
            self._start(request)
            return

        if self._passive_queue and self._mode is Mode.PASSIVE and not self._paused:
            self._start(self._passive_queue.popleft())

    def _refresh_if_stale(self, request: ActiveRequest) -> ActiveRequest:
        """Re-target a held question at the newest frame if the scene moved on."""
        if self._latest_frame is None:
            return request
        latest = self._latest_frame()
        if latest is None or latest.fast_hash == request.fast_hash:
            return request
        if not scene_changed(
            request.perceptual_hash, latest.perceptual_hash, self._buffer.detector.threshold
        ):
            return request
        try:
            refreshed = self._validator.validate_active(request.prompt, latest)
        except RequestValidationError:
            return request
        logger.info(f"Pending question re-targeted from stale frame to frame {latest.frame_id}")
        return refreshed

    def _start(self, request: InferenceRequest) -> None:
        self._current = request
        if request.is_active:
            self._mode = Mode.ACTIVE_BUSY
        else:
            self._buffer.mark_sent(request.frame.fast_hash)
        self.metrics.inferences_started += 1
        self._watchdog.observe(SessionState.BUSY, self._clock())
        logger.info(
            f"Starting {request_kind(request)} inference on frame {request.frame.frame_id}"
        )
        self._inflight = asyncio.create_task(
            self._run(request),
            name=f"inference-{request_kind(request)}-{request.frame.frame_id}",
        )

    async def _run(self, request: InferenceRequest) -> None:
        try:
            status = await asyncio.wait_for(
                self._consume(request),
                timeout=self._inference_timeout,
            )
        except asyncio.TimeoutError:
            status = ChunkStatus.TIMEOUT
            self.metrics.inferences_timed_out += 1
            logger.warning(
                f"{request_kind(request).capitalize()} inference timed out after "
                f"{self._inference_timeout}s"
            )
            self._session.abandon()
            self._watchdog.clear()
            self._speech.publish(TIMEOUT_MESSAGE, True)

        self._finish(request, status)

    async def _consume(self, request: InferenceRequest) -> ChunkStatus:
        if isinstance(request, ActiveRequest):
            prompt = active_prompt(request.prompt, self._active_template)
        else:
            prompt = self._passive_prompt

        attempt = 1
        spoken = ""
        async for chunk in self._session.submit(prompt, request.frame.image):
            if chunk.attempt != attempt:
                # A retry restarts the response text
                attempt = chunk.attempt
                spoken = ""

            if not chunk.is_final:
                spoken += chunk.text
                if self._should_speak(request):
                    self._speech.publish(spoken, False)
                continue

            if chunk.status is ChunkStatus.COMPLETE:
                if self._should_speak(request):
                    self._speech.publish(chunk.text, True)
            elif chunk.status is ChunkStatus.ERROR:
                # Background failures return silently to ready
                if request.is_active:
                    self._speech.publish(chunk.text or PROCESSING_ERROR_MESSAGE, True)
            else:
                logger.warning(f"Session refused request: {chunk.status.value}")
            return chunk.status

        logger.warning("Inference stream ended without a final chunk")
        return ChunkStatus.ERROR

    def _should_speak(self, request: InferenceRequest) -> bool:
        if request.is_active:
            return self._mode is Mode.ACTIVE_BUSY
        return self._mode is Mode.PASSIVE and not self._paused

    def _finish(self, request: InferenceRequest, status: ChunkStatus) -> None:
        if self._inflight is asyncio.current_task():
            self._inflight = None
            self._current = None

        if status is ChunkStatus.COMPLETE:
            self.metrics.inferences_completed += 1
            if not request.is_active:
                self._buffer.detector.mark_described(request.frame.perceptual_hash)
        elif status in (ChunkStatus.BUSY, ChunkStatus.NOT_READY):
            if isinstance(request, ActiveRequest) and self._pending_active is None:
                # Never silently lose a question
                self._pending_active = request
        elif status is not ChunkStatus.TIMEOUT:
            self.metrics.inferences_failed += 1

        if request.is_active and self._pending_active is None:
            self._finish_active()
        elif request.is_active:
            # Follow-up question waits; keep passive paused
            self._mode = Mode.ACTIVE

        if self._session.state is SessionState.ERROR:
            self._announce_critical()

        self._watchdog.observe(self._session.state, self._clock())
        self._drain()

    async def _recover_stuck(self) -> None:
        """Watchdog path: abandon everything and rebuild the session."""
        task = self._inflight
        request = self._current
        self._inflight = None
        self._current = None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        queued = len(self._passive_queue)
        self._passive_queue.clear()
        had_pending = self._pending_active is not None
        self._pending_active = None
        self._buffer.clear()
        self._buffer.forget_history()
        self._buffer.detector.reset()
        self._watchdog.clear()

        try:
            # A hung runtime may hang open_session too; never block the tick
            rebuilt = await asyncio.wait_for(
                self._session.force_reset(),
                timeout=self._inference_timeout,
            )
        except asyncio.TimeoutError:
            rebuilt = False
            logger.error(
                f"Session rebuild did not finish within {self._inference_timeout}s, "
                f"deferring it to the next inference"
            )
        self.metrics.watchdog_resets += 1

        if self._mode is not Mode.PASSIVE or self._paused:
            self._finish_active()

        logger.warning(
            f"Watchdog recovery: abandoned {request_kind(request)} inference, "
            f"flushed {queued} passive and {int(had_pending)} active requests, "
            f"session {'rebuilt' if rebuilt else 'rebuild failed'}"
        )
        if self._session.state is SessionState.ERROR:
            self._announce_critical()

    def _announce_critical(self, repeat: bool = False) -> None:
        """Speak the session's fatal error (once, unless repeat)."""
        message = self._session.critical_error
        if not message or (message == self._announced_error and not repeat):
            return
        self._announced_error = message
        self._speech.publish(message, True)
