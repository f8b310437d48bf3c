"""
Frame Sample
============

Immutable value describing one captured camera frame and its quality scores.

Design Rules:
    - Constructed once by the FrameEvaluator at capture time
    - Never mutated; the pixel array is a private read-only copy
    - Handed off by value from the admission buffer to the controller
"""

from dataclasses import dataclass, field

import numpy as np


@dataclass(frozen=True, slots=True, eq=False)
class FrameSample:
    """
    Scored camera frame.

    Attributes:
        frame_id: Monotonically increasing capture counter
        captured_at: Capture timestamp (seconds, caller's clock)
        image: BGR pixels (H, W, 3), dtype=uint8, read-only
        sharpness: Laplacian variance (higher = sharper)
        brightness: Mean luma in [0, 1]
        fast_hash: Order-sensitive subsampled hash for exact duplicates
        perceptual_hash: 64-bit average hash for approximate similarity
        sharpness_floor: Floor used to derive is_stable / is_usable
        brightness_floor: Floor used to derive is_usable
        motion_blur_threshold: Sharpness below this counts as motion blur
    """

    frame_id: int
    captured_at: float
    image: np.ndarray = field(repr=False)
    sharpness: float
    brightness: float
    fast_hash: int
    perceptual_hash: int
    sharpness_floor: float = 15.0
    brightness_floor: float = 0.15
    motion_blur_threshold: float = 25.0

    @property
    def is_stable(self) -> bool:
        """Sharp enough to describe."""
        return self.sharpness > self.sharpness_floor

    @property
    def is_usable(self) -> bool:
        """Sharp and bright enough to describe."""
        return self.is_stable and self.brightness > self.brightness_floor

    @property
    def is_motion_blurred(self) -> bool:
        return self.sharpness < self.motion_blur_threshold

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    def __repr__(self) -> str:
        """Compact repr that doesn't dump the pixels."""
        return (
            f"FrameSample(frame_id={self.frame_id}, "
            f"sharpness={self.sharpness:.1f}, "
            f"brightness={self.brightness:.2f}, "
            f"fast_hash={self.fast_hash:#x})"
        )
