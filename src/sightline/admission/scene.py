"""
Scene-Change Detector
=====================

Tracks the perceptual fingerprint of the last frame whose description
actually completed and flags when the live scene has moved far enough
away from it to be worth describing again.

Rules:
    - Only completed inferences update the reference fingerprint
    - No reference yet means the scene has changed
    - distance >= threshold means the scene has changed (symmetric)
"""

import logging
from typing import Optional

from sightline.quality.evaluator import hamming_distance


logger = logging.getLogger(__name__)


def scene_changed(a: Optional[int], b: int, threshold: int) -> bool:
    """True when a is missing or differs from b by >= threshold bits."""
    if a is None:
        return True
    return hamming_distance(a, b) >= threshold


class SceneChangeDetector:
    """
    Reference-fingerprint tracker for scene transitions.

    Example:
        detector = SceneChangeDetector(threshold=10)
        if detector.has_scene_changed(sample.perceptual_hash):
            ...
        # After the description completes
        detector.mark_described(sample.perceptual_hash)
    """

    def __init__(self, threshold: int = 10) -> None:
        if not 1 <= threshold <= 64:
            raise ValueError("threshold must be in [1, 64]")
        self.threshold = threshold
        self._last_described: Optional[int] = None

    @property
    def last_described(self) -> Optional[int]:
        """Fingerprint of the last described frame, if any."""
        return self._last_described

    def has_scene_changed(self, candidate: int) -> bool:
        changed = scene_changed(self._last_described, candidate, self.threshold)
        if self._last_described is not None:
            distance = hamming_distance(self._last_described, candidate)
            logger.debug(
                f"Scene distance {distance} vs threshold {self.threshold}: "
                f"{'changed' if changed else 'similar'}"
            )
        return changed

    def mark_described(self, fingerprint: int) -> None:
        self._last_described = fingerprint

    def reset(self) -> None:
        """Forget the reference (full recovery)."""
        self._last_described = None
