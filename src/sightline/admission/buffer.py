"""
Frame Admission Buffer
======================

Fixed-capacity rolling window of recent frames with a once-per-tick
selection policy.

Design Rules:
    - Holds at most `capacity` samples (drops oldest on overflow)
    - Cleared entirely after every selection tick and on pause
    - Back-pressure: while an inference is in flight the buffer is kept
      and keeps rolling
    - Never selects a frame whose fast hash equals the last one actually
      sent for inference (recorded by the consumer through mark_sent)

Selection (per tick):
    1. Not admitting  -> discard everything (PAUSED)
    2. Busy           -> keep everything (BACKPRESSURE)
    3. Scene change   -> newest usable, else newest stable, else newest
       Same scene     -> newest usable, else sharpest of the whole buffer
    4. Duplicate of the last frame sent -> drop (DUPLICATE)
"""

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional

from sightline.admission.scene import SceneChangeDetector
from sightline.models.frame import FrameSample
from sightline.models.reason_codes import AdmissionOutcome


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AdmissionResult:
    """Outcome of one tick; frame is set only for SELECTED."""

    outcome: AdmissionOutcome
    frame: Optional[FrameSample] = None
    scene_change: bool = False
    candidates: int = 0


class AdmissionBuffer:
    """
    Rolling window of FrameSample values.

    Attributes:
        capacity: Maximum number of buffered frames
        dropped_count: Frames evicted because the window was full
        total_put: Frames ever pushed

    Example:
        buffer = AdmissionBuffer(capacity=4, detector=SceneChangeDetector())

        # Capture side
        buffer.push(sample)

        # Tick side
        result = buffer.tick(admitting=True, busy=False)
        if result.outcome is AdmissionOutcome.SELECTED:
            controller.submit_passive(result.frame)
    """

    def __init__(
        self,
        capacity: int = 4,
        detector: Optional[SceneChangeDetector] = None,
    ) -> None:
        """
        Initialize admission buffer.

        Args:
            capacity: Window size. Must be >= 1.
            detector: Scene-change detector consulted on each tick
        """
        if capacity < 1:
            raise ValueError("capacity must be >= 1")

        self._capacity = capacity
        self._frames: Deque[FrameSample] = deque(maxlen=capacity)
        self.detector = detector or SceneChangeDetector()

        self._last_sent_hash: Optional[int] = None
        self._scene_change_active: bool = False

        self._dropped_count: int = 0
        self._total_put: int = 0
        self._selected_count: int = 0
        self._duplicate_count: int = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        return len(self._frames)

    @property
    def dropped_count(self) -> int:
        return self._dropped_count

    @property
    def total_put(self) -> int:
        return self._total_put

    @property
    def last_sent_hash(self) -> Optional[int]:
        """Fast hash of the last frame sent for inference."""
        return self._last_sent_hash

    @property
    def scene_change_active(self) -> bool:
        return self._scene_change_active

    def frames(self) -> List[FrameSample]:
        """Snapshot of buffered frames, oldest first."""
        return list(self._frames)

    def push(self, frame: FrameSample) -> bool:
        """
        Add frame, evicting the oldest if full.

        Returns:
            True if added without evicting, False if the oldest was dropped.
        """
        self._total_put += 1
        evicted = len(self._frames) == self._capacity
        if evicted:
            self._dropped_count += 1
            logger.debug(
                f"Admission buffer full, evicted frame {self._frames[0].frame_id}"
            )
        self._frames.append(frame)
        return not evicted

    def clear(self) -> int:
        """Discard all buffered frames. Returns the number discarded."""
        cleared = len(self._frames)
        self._frames.clear()
        return cleared

    def mark_sent(self, fast_hash: int) -> None:
        """Record the fingerprint of a frame that actually went to inference."""
        self._last_sent_hash = fast_hash

    def forget_history(self) -> None:
        """Drop duplicate-suppression and scene-change memory."""
        self._last_sent_hash = None
        self._scene_change_active = False

    def tick(self, admitting: bool, busy: bool) -> AdmissionResult:
        """
        Run one selection tick.

        Args:
            admitting: Passive mode and not paused
            busy: An inference is in flight

        Returns:
            AdmissionResult describing what happened
        """
        if not admitting:
            cleared = self.clear()
            if cleared:
                logger.debug(f"Admission paused, discarded {cleared} frames")
            return AdmissionResult(AdmissionOutcome.PAUSED)

        if busy:
            return AdmissionResult(AdmissionOutcome.BACKPRESSURE, candidates=self.size)

        if not self._frames:
            return AdmissionResult(AdmissionOutcome.EMPTY)

        frames = list(self._frames)
        self._frames.clear()

        # Sticky until a frame is actually handed off
        if self.detector.has_scene_changed(frames[-1].perceptual_hash):
            self._scene_change_active = True

        candidate = self._select(frames)
        logger.debug(
            f"Tick over {len(frames)} frames, scene_change={self._scene_change_active}, "
            f"candidate={candidate!r}"
        )

        if self._last_sent_hash is not None and candidate.fast_hash == self._last_sent_hash:
            self._duplicate_count += 1
            logger.info(f"Rejecting duplicate frame (hash {candidate.fast_hash:#x})")
            return AdmissionResult(
                AdmissionOutcome.DUPLICATE,
                scene_change=self._scene_change_active,
                candidates=len(frames),
            )

        scene_change = self._scene_change_active
        self._scene_change_active = False
        self._selected_count += 1
        logger.info(
            f"Selected frame {candidate.frame_id} for inference "
            f"(sharpness={candidate.sharpness:.1f}, scene_change={scene_change})"
        )
        return AdmissionResult(
            AdmissionOutcome.SELECTED,
            frame=candidate,
            scene_change=scene_change,
            candidates=len(frames),
        )

    def _select(self, frames: List[FrameSample]) -> FrameSample:
        usable = [f for f in frames if f.is_usable]

        if self._scene_change_active:
            # Freshness wins during transitions
            if usable:
                return usable[-1]
            stable = [f for f in frames if f.is_stable]
            if stable:
                return stable[-1]
            return frames[-1]

        if usable:
            return usable[-1]

        logger.warning(
            f"No frames passed quality filter, using sharpest of {len(frames)}"
        )
        return max(frames, key=lambda f: f.sharpness)

    def metrics(self) -> dict:
        """
        Get buffer metrics for observability.

        Returns:
            Dict with size, capacity, dropped_count, total_put,
            selected_count, duplicate_count
        """
        return {
            "size": self.size,
            "capacity": self._capacity,
            "dropped_count": self._dropped_count,
            "total_put": self._total_put,
            "selected_count": self._selected_count,
            "duplicate_count": self._duplicate_count,
        }
