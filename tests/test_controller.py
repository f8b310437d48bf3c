"""
Mode & Queue Controller Tests
=============================

Tests for passive/active arbitration, request queueing, timeouts and
watchdog recovery.
"""

import asyncio
import random
import threading

import numpy as np
import pytest

from sightline.admission import AdmissionBuffer, SceneChangeDetector
from sightline.config import ControlConfig, SessionConfig
from sightline.errors import ContextOverflowError
from sightline.control import ModeQueueController, Utterance, Watchdog
from sightline.control.controller import TIMEOUT_MESSAGE
from sightline.models import AdmissionOutcome, Mode, RequestOutcome, SessionState
from sightline.session import InferenceSessionManager

from conftest import GATE, HANG, ScriptedRuntime, make_sample, settle


def build(
    runtime,
    clock,
    inference_timeout: float = 15.0,
    reset_cooldown: float = 5.0,
    latest=None,
):
    session = InferenceSessionManager(
        runtime,
        config=SessionConfig(reset_cooldown_seconds=reset_cooldown),
        clock=clock,
    )
    buffer = AdmissionBuffer(capacity=4, detector=SceneChangeDetector(threshold=10))
    controller = ModeQueueController(
        session,
        buffer,
        Watchdog(stuck_timeout=30.0),
        config=ControlConfig(),
        inference_timeout=inference_timeout,
        latest_frame=latest,
        clock=clock,
    )
    return controller, buffer


class TestValidation:
    """Invalid active requests never reach the session."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "prompt, sample_kwargs, message",
        [
            ("   ", {}, "Invalid request: Prompt is empty"),
            ("x" * 513, {}, "Invalid request: Prompt too long (513 characters, maximum 512)"),
            ("what", {"size": 50}, "Invalid request: Image too small (50x50, minimum 100x100)"),
            ("what", {"sharpness": 5.0}, "Invalid request: Frame not sharp enough. Try again."),
            ("what", {"brightness": 0.05}, "Invalid request: Frame too dark. Try again."),
        ],
    )
    async def test_rejected(self, runtime, clock, prompt, sample_kwargs, message):
        controller, _ = build(runtime, clock)
        await controller.start()

        outcome = controller.question_ready(prompt, make_sample(**sample_kwargs))
        await settle()

        assert outcome is RequestOutcome.REJECTED
        assert runtime.calls == []
        assert controller.speech.drain() == [Utterance(message, True)]
        assert controller.mode is Mode.PASSIVE
        assert controller.metrics.active_rejected == 1

    @pytest.mark.asyncio
    async def test_missing_frame(self, runtime, clock):
        controller, _ = build(runtime, clock)
        await controller.start()

        assert controller.question_ready("what", None) is RequestOutcome.REJECTED
        assert runtime.calls == []

    @pytest.mark.asyncio
    async def test_rejection_while_active_returns_to_passive(self, runtime, clock):
        controller, _ = build(runtime, clock)
        await controller.start()
        controller.trigger()

        controller.question_ready("", make_sample())

        assert controller.mode is Mode.PASSIVE
        assert not controller.paused


class TestActiveRequests:
    """Tests for user questions."""

    @pytest.mark.asyncio
    async def test_question_runs_and_returns_to_passive(self, runtime, clock):
        controller, _ = build(runtime, clock)
        await controller.start()

        outcome = controller.question_ready("what is ahead?", make_sample())
        assert outcome is RequestOutcome.STARTED
        assert controller.mode is Mode.ACTIVE_BUSY
        assert controller.paused

        await controller.wait_idle()

        assert controller.mode is Mode.PASSIVE
        assert not controller.paused
        assert runtime.calls[0][1].endswith("User: what is ahead?")
        assert controller.speech.drain() == [
            Utterance("CLEAR", False),
            Utterance("CLEAR AHEAD", False),
            Utterance("CLEAR AHEAD", True),
        ]

    @pytest.mark.asyncio
    async def test_trigger_pauses_passive_and_clears_output(self, runtime, clock):
        controller, buffer = build(runtime, clock)
        await controller.start()
        buffer.push(make_sample())
        controller.speech.publish("stale alert", True)

        controller.trigger()

        assert controller.mode is Mode.ACTIVE
        assert controller.paused
        assert buffer.size == 0
        assert controller.speech.size == 0
        assert controller.submit_passive(make_sample()) is RequestOutcome.BUSY

    @pytest.mark.asyncio
    async def test_cancel_question(self, runtime, clock):
        controller, _ = build(runtime, clock)
        controller.trigger()
        controller.cancel_question()

        assert controller.mode is Mode.PASSIVE
        assert not controller.paused

    @pytest.mark.asyncio
    async def test_pending_question_is_superseded(self, clock):
        runtime = ScriptedRuntime(script=[GATE])
        controller, _ = build(runtime, clock)
        await controller.start()

        assert controller.submit_passive(make_sample(fast_hash=1)) is RequestOutcome.STARTED
        await settle()

        assert controller.question_ready("first question", make_sample()) is RequestOutcome.PENDING
        assert controller.question_ready("second question", make_sample()) is RequestOutcome.SUPERSEDED
        assert controller.pending_active.prompt == "second question"
        assert controller.metrics.active_superseded == 1

        # The executing passive inference is not preempted
        assert len(runtime.calls) == 1
        runtime.gate.set()
        await controller.wait_idle()

        assert len(runtime.calls) == 2
        assert runtime.calls[1][1].endswith("User: second question?")
        assert controller.mode is Mode.PASSIVE
        # Passive output produced while paused is not spoken
        finals = [u.text for u in controller.speech.drain() if u.is_final]
        assert finals == ["CLEAR AHEAD"]
        assert controller.metrics.inferences_completed == 2

    @pytest.mark.asyncio
    async def test_trigger_while_active_busy_keeps_mode(self, clock):
        runtime = ScriptedRuntime(script=[GATE])
        controller, _ = build(runtime, clock)
        await controller.start()
        controller.question_ready("first", make_sample())

        controller.trigger()
        assert controller.mode is Mode.ACTIVE_BUSY

        assert controller.question_ready("follow up", make_sample()) is RequestOutcome.PENDING
        runtime.gate.set()
        await controller.wait_idle()

        assert runtime.calls[0][1].endswith("User: first?")
        assert runtime.calls[1][1].endswith("User: follow up?")
        assert controller.mode is Mode.PASSIVE

    @pytest.mark.asyncio
    async def test_question_waits_for_initialization(self, clock):
        runtime = ScriptedRuntime(fail_open=True)
        controller, _ = build(runtime, clock)

        assert not await controller.start()
        critical = controller.speech.drain()
        assert critical[0].text.startswith("Failed to initialize vision system")
        assert controller.session.state is SessionState.ERROR

        assert controller.question_ready("what", make_sample()) is RequestOutcome.PENDING

        runtime.fail_open = False
        assert await controller.retry_initialization()
        await controller.wait_idle()

        assert len(runtime.calls) == 1
        assert controller.mode is Mode.PASSIVE

    @pytest.mark.asyncio
    async def test_stale_pending_question_moves_to_latest_frame(self, clock):
        runtime = ScriptedRuntime(script=[GATE])
        asked_about = make_sample(fast_hash=1, perceptual_hash=0)
        latest = make_sample(fast_hash=2, perceptual_hash=(1 << 64) - 1)
        controller, _ = build(runtime, clock, latest=lambda: latest)
        await controller.start()

        controller.submit_passive(make_sample(fast_hash=3))
        await settle()
        controller.question_ready("what", asked_about)
        runtime.gate.set()
        await controller.wait_idle()

        assert controller.metrics.inferences_completed == 2
        assert np.shares_memory(runtime.calls[1][2], latest.image)
        assert not np.shares_memory(runtime.calls[1][2], asked_about.image)

    @pytest.mark.asyncio
    async def test_error_is_spoken_for_questions_only(self, clock):
        runtime = ScriptedRuntime(script=[ValueError("bad"), ValueError("bad")])
        controller, _ = build(runtime, clock)
        await controller.start()

        controller.submit_passive(make_sample(fast_hash=1))
        await controller.wait_idle()
        assert controller.speech.drain() == []

        controller.question_ready("what", make_sample())
        await controller.wait_idle()
        assert controller.speech.drain()[-1] == Utterance("Processing error occurred", True)
        assert controller.metrics.inferences_failed == 2


class TestPassiveRequests:
    """Tests for background descriptions."""

    @pytest.mark.asyncio
    async def test_tick_hands_selected_frame_to_session(self, runtime, clock):
        controller, buffer = build(runtime, clock)
        await controller.start()
        frame = make_sample(fast_hash=7, perceptual_hash=0xABC)
        buffer.push(frame)

        result = await controller.tick()
        assert result.outcome is AdmissionOutcome.SELECTED
        assert controller.current_request.frame is frame

        await controller.wait_idle()
        assert controller.speech.drain()[-1] == Utterance("CLEAR AHEAD", True)
        assert buffer.detector.last_described == 0xABC

    @pytest.mark.asyncio
    async def test_tick_applies_backpressure(self, clock):
        runtime = ScriptedRuntime(script=[GATE])
        controller, buffer = build(runtime, clock)
        await controller.start()
        buffer.push(make_sample(fast_hash=1))
        await controller.tick()

        buffer.push(make_sample(fast_hash=2))
        result = await controller.tick()

        assert result.outcome is AdmissionOutcome.BACKPRESSURE
        assert buffer.size == 1
        runtime.gate.set()
        await controller.wait_idle()

    @pytest.mark.asyncio
    async def test_failed_passive_does_not_update_scene_reference(self, clock):
        runtime = ScriptedRuntime(script=[ValueError("bad")])
        controller, buffer = build(runtime, clock)
        await controller.start()
        buffer.push(make_sample(fast_hash=1, perceptual_hash=0xFF))

        await controller.tick()
        await controller.wait_idle()

        assert buffer.detector.last_described is None

    @pytest.mark.asyncio
    async def test_passive_queue_drops_oldest(self, clock):
        runtime = ScriptedRuntime(script=[GATE])
        controller, _ = build(runtime, clock)
        await controller.start()
        controller.submit_passive(make_sample(fast_hash=0))

        outcomes = [controller.submit_passive(make_sample(fast_hash=i)) for i in range(1, 7)]

        assert outcomes == [RequestOutcome.QUEUED] * 6
        assert controller.passive_queue_size == 4
        assert controller.metrics.passive_dropped == 2

        runtime.gate.set()
        await controller.wait_idle()
        assert len(runtime.calls) == 5

    @pytest.mark.asyncio
    async def test_rejected_frame_does_not_block_repeat(self, runtime, clock):
        controller, buffer = build(runtime, clock)
        await controller.start()
        buffer.push(make_sample(fast_hash=5, size=40))
        await controller.tick()
        assert runtime.calls == []

        buffer.push(make_sample(fast_hash=5))
        result = await controller.tick()

        assert result.outcome is AdmissionOutcome.SELECTED
        assert buffer.last_sent_hash == 5
        await controller.wait_idle()
        assert len(runtime.calls) == 1

    @pytest.mark.asyncio
    async def test_small_passive_frame_rejected(self, runtime, clock):
        controller, _ = build(runtime, clock)
        await controller.start()

        assert controller.submit_passive(make_sample(size=40)) is RequestOutcome.REJECTED


class TestTimeout:
    """Tests for the per-inference wall-clock timeout."""

    @pytest.mark.asyncio
    async def test_hung_question_times_out(self, clock):
        runtime = ScriptedRuntime(script=[HANG])
        controller, _ = build(runtime, clock, inference_timeout=0.05)
        await controller.start()

        controller.question_ready("what", make_sample())
        await controller.wait_idle()

        assert controller.speech.drain()[-1] == Utterance(TIMEOUT_MESSAGE, True)
        assert controller.metrics.inferences_timed_out == 1
        assert controller.session.is_ready
        assert controller.mode is Mode.PASSIVE
        assert runtime.active == 0

        # The session is usable again
        controller.question_ready("again", make_sample())
        await controller.wait_idle()
        assert controller.speech.drain()[-1] == Utterance("CLEAR AHEAD", True)


class TestWatchdogRecovery:
    """Tests for stuck-session recovery on the tick."""

    @pytest.mark.asyncio
    async def test_stuck_passive_forces_reset_despite_cooldown(self, clock):
        runtime = ScriptedRuntime(script=[HANG])
        controller, buffer = build(runtime, clock, inference_timeout=600.0, reset_cooldown=100.0)
        await controller.start()
        session = controller.session
        assert await session.reset()
        assert session.generation == 2

        assert controller.submit_passive(make_sample(fast_hash=1)) is RequestOutcome.STARTED
        await settle()
        assert controller.submit_passive(make_sample(fast_hash=2)) is RequestOutcome.QUEUED
        assert session.state is SessionState.BUSY

        clock.advance(31.0)
        await controller.tick()

        assert session.generation == 3
        assert session.state is SessionState.READY
        assert controller.passive_queue_size == 0
        assert controller.metrics.watchdog_resets == 1
        assert not controller.is_inference_running
        assert runtime.active == 0

    @pytest.mark.asyncio
    async def test_stuck_recovery_flushes_pending_question(self, clock):
        runtime = ScriptedRuntime(script=[HANG])
        controller, _ = build(runtime, clock, inference_timeout=600.0)
        await controller.start()

        controller.submit_passive(make_sample(fast_hash=1))
        await settle()
        controller.question_ready("what", make_sample())
        assert controller.pending_active is not None

        clock.advance(31.0)
        await controller.tick()
        await controller.wait_idle()

        assert controller.pending_active is None
        assert controller.mode is Mode.PASSIVE
        assert not controller.paused
        assert len(runtime.calls) == 1

    @pytest.mark.asyncio
    async def test_not_stuck_before_timeout(self, clock):
        runtime = ScriptedRuntime(script=[HANG])
        controller, _ = build(runtime, clock, inference_timeout=600.0)
        await controller.start()
        controller.submit_passive(make_sample(fast_hash=1))
        await settle()

        clock.advance(29.0)
        await controller.tick()

        assert controller.metrics.watchdog_resets == 0
        assert controller.is_inference_running
        await controller.shutdown()


class TestSerialization:
    """At most one inference is ever in flight."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", range(4))
    async def test_random_interleavings(self, clock, seed):
        rng = random.Random(seed)
        runtime = ScriptedRuntime(delay=0.001)
        controller, buffer = build(runtime, clock, inference_timeout=5.0)
        await controller.start()

        def sample():
            return make_sample(
                fast_hash=rng.randint(0, 3),
                perceptual_hash=rng.getrandbits(64),
                sharpness=rng.uniform(5, 100),
                brightness=rng.uniform(0.05, 1),
            )

        for _ in range(150):
            action = rng.random()
            if action < 0.3:
                buffer.push(sample())
            elif action < 0.5:
                await controller.tick()
            elif action < 0.6:
                controller.question_ready("what is there", sample())
            elif action < 0.65:
                controller.trigger()
            elif action < 0.8:
                controller.submit_passive(sample())
            else:
                await asyncio.sleep(rng.choice([0, 0.001, 0.003]))
            clock.advance(0.25)
            assert runtime.active <= 1
            assert buffer.size <= 4

        await controller.wait_idle()

        assert runtime.max_active == 1
        assert not controller.session.is_executing


class TestFatalErrors:
    """A failed session rebuild is always reported to the user."""

    REBUILD_FAILED = "Failed to rebuild inference session: model file missing"

    @pytest.mark.asyncio
    async def test_failed_proactive_reset_is_spoken(self, runtime, clock):
        controller, _ = build(runtime, clock)
        await controller.start()
        for i in range(4):
            controller.submit_passive(make_sample(fast_hash=i))
            await controller.wait_idle()
        controller.speech.drain()

        runtime.fail_open = True
        controller.submit_passive(make_sample(fast_hash=10))
        await controller.wait_idle()

        assert controller.session.state is SessionState.ERROR
        assert controller.speech.drain() == [Utterance(self.REBUILD_FAILED, True)]

        # Announced once, not on every tick
        await controller.tick()
        assert controller.speech.drain() == []

        # A question explains why it cannot run, then runs after the retry
        assert controller.question_ready("what", make_sample()) is RequestOutcome.PENDING
        assert controller.speech.drain() == [Utterance(self.REBUILD_FAILED, True)]

        runtime.fail_open = False
        assert await controller.retry_initialization()
        await controller.wait_idle()
        assert controller.speech.drain()[-1] == Utterance("CLEAR AHEAD", True)

    @pytest.mark.asyncio
    async def test_failed_recreation_after_overflow_is_spoken(self, clock):
        runtime = ScriptedRuntime(script=[ContextOverflowError("full")])
        controller, _ = build(runtime, clock)
        await controller.start()

        runtime.fail_open = True
        controller.submit_passive(make_sample(fast_hash=1))
        await controller.wait_idle()

        assert controller.session.state is SessionState.ERROR
        finals = [u.text for u in controller.speech.drain() if u.is_final]
        assert finals == [self.REBUILD_FAILED]

    @pytest.mark.asyncio
    async def test_hung_rebuild_does_not_block_tick(self, clock):
        runtime = ScriptedRuntime(script=[HANG])
        controller, _ = build(runtime, clock, inference_timeout=0.2)
        await controller.start()
        session = controller.session
        controller.submit_passive(make_sample(fast_hash=1))
        await settle()

        runtime.open_gate = threading.Event()
        clock.advance(31.0)
        try:
            await asyncio.wait_for(controller.tick(), timeout=3.0)

            assert controller.metrics.watchdog_resets == 1
            assert session.state is SessionState.READY
            assert session.needs_recreation
        finally:
            runtime.open_gate.set()

        # The deferred rebuild happens before the next inference
        controller.submit_passive(make_sample(fast_hash=2))
        await controller.wait_idle()
        assert session.generation == 2
        assert not session.needs_recreation
        assert controller.metrics.inferences_completed == 1
