"""
Scene-Change Detector Tests
===========================
"""

import random

import pytest

from sightline.admission import SceneChangeDetector, scene_changed
from sightline.quality import hamming_distance


def flip_bits(value: int, count: int) -> int:
    """Flip the lowest `count` bits."""
    return value ^ ((1 << count) - 1)


class TestSceneChanged:
    """Tests for the pure scene-change predicate."""

    def test_no_reference_is_a_change(self):
        assert scene_changed(None, 0x1234, threshold=10)

    def test_threshold_boundary(self):
        base = 0xF0F0F0F0F0F0F0F0
        assert not scene_changed(base, flip_bits(base, 9), threshold=10)
        assert scene_changed(base, flip_bits(base, 10), threshold=10)

    def test_identical_fingerprints(self):
        assert not scene_changed(42, 42, threshold=1)

    def test_symmetric(self):
        rng = random.Random(1234)
        for _ in range(500):
            a = rng.getrandbits(64)
            b = a ^ rng.getrandbits(rng.randint(0, 64)) if rng.random() < 0.5 else rng.getrandbits(64)
            threshold = rng.randint(1, 64)
            assert scene_changed(a, b, threshold) == scene_changed(b, a, threshold)
            assert scene_changed(a, b, threshold) == (hamming_distance(a, b) >= threshold)


class TestSceneChangeDetector:
    """Tests for the reference-fingerprint tracker."""

    def test_first_frame_is_a_change(self):
        detector = SceneChangeDetector()
        assert detector.has_scene_changed(0)

    def test_only_marked_frames_update_reference(self):
        detector = SceneChangeDetector(threshold=10)
        detector.mark_described(0)

        far = (1 << 20) - 1
        assert detector.has_scene_changed(far)
        # Asking does not move the reference
        assert detector.has_scene_changed(far)
        assert detector.last_described == 0

        detector.mark_described(far)
        assert not detector.has_scene_changed(far)

    def test_reset_forgets_reference(self):
        detector = SceneChangeDetector()
        detector.mark_described(7)
        detector.reset()

        assert detector.last_described is None
        assert detector.has_scene_changed(7)

    @pytest.mark.parametrize("threshold", [0, 65])
    def test_rejects_invalid_threshold(self, threshold):
        with pytest.raises(ValueError):
            SceneChangeDetector(threshold=threshold)
