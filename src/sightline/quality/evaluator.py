"""
Frame Quality Evaluator
=======================

Pure scoring functions for captured frames.

Scores:
    - sharpness: variance of the Laplacian edge response (higher = sharper)
    - brightness: mean luma normalized to [0, 1]
    - fast hash: subsampled rolling multiplicative hash (exact repeats only)
    - perceptual hash: 8x8 average hash packed into 64 bits (similarity)

Design Rules:
    - No side effects; every score is a pure function of the pixels
    - FrameEvaluator is the only producer of FrameSample
"""

import itertools
import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from sightline.models.frame import FrameSample
from sightline.quality.image_ops import ensure_bgr, to_grayscale


logger = logging.getLogger(__name__)


HASH_MASK = (1 << 64) - 1
FAST_HASH_SIZE = 128
FAST_HASH_SAMPLES = 2000
PHASH_SIZE = 8


@dataclass(frozen=True, slots=True)
class QualityThresholds:
    """
    Quality floors for admission.

    A frame is usable when sharpness > sharpness_floor AND
    brightness > brightness_floor.
    """

    sharpness_floor: float = 15.0
    brightness_floor: float = 0.15
    motion_blur_threshold: float = 25.0


def compute_sharpness(image: np.ndarray) -> float:
    """Variance of the Laplacian of the grayscale image."""
    gray = to_grayscale(image)
    laplacian = cv2.Laplacian(gray, cv2.CV_64F)
    return float(laplacian.var())


def compute_brightness(image: np.ndarray) -> float:
    """Mean luma (ITU-R BT.601 weights) in [0, 1]."""
    gray = to_grayscale(image)
    return float(gray.mean()) / 255.0


def compute_fast_hash(image: np.ndarray) -> int:
    """
    Cheap order-sensitive fingerprint for exact-duplicate rejection.

    The image is resized to 128x128, then every step-th pixel (raster order)
    is folded into h = h*31 + r*37 + g*41 + b*43, wrapped to 64 bits.
    """
    bgr = ensure_bgr(image)
    small = cv2.resize(
        bgr, (FAST_HASH_SIZE, FAST_HASH_SIZE), interpolation=cv2.INTER_AREA
    )
    pixels = small.reshape(-1, 3)
    step = max(1, len(pixels) // FAST_HASH_SAMPLES)

    h = 0
    for b, g, r in pixels[::step].tolist():
        h = (h * 31 + r * 37 + g * 41 + b * 43) & HASH_MASK
    return h


def compute_perceptual_hash(image: np.ndarray) -> int:
    """
    64-bit average hash.

    Downsample to 8x8, threshold each cell against the integer mean,
    and pack: bit i is set when cell i (raster order) is above the mean.
    """
    gray = to_grayscale(image)
    cells = cv2.resize(gray, (PHASH_SIZE, PHASH_SIZE), interpolation=cv2.INTER_AREA)
    flat = cells.flatten().astype(np.int64)
    mean = int(flat.sum()) // flat.size

    h = 0
    for i, above in enumerate(flat > mean):
        if above:
            h |= 1 << i
    return h


def hamming_distance(a: int, b: int) -> int:
    """Number of differing bits between two fingerprints."""
    return (a ^ b).bit_count()


class FrameEvaluator:
    """
    Builds FrameSample values from raw pixels.

    Example:
        evaluator = FrameEvaluator(QualityThresholds())
        sample = evaluator.evaluate(image, captured_at=time.monotonic())
        if sample.is_usable:
            buffer.push(sample)
    """

    def __init__(self, thresholds: Optional[QualityThresholds] = None) -> None:
        self.thresholds = thresholds or QualityThresholds()
        self._ids = itertools.count(1)

    def evaluate(self, image: np.ndarray, captured_at: float) -> FrameSample:
        """
        Score an upright image.

        The pixels are copied and frozen so the sample never aliases
        the capture source's buffer.
        """
        bgr = ensure_bgr(image)
        pixels = np.array(bgr, copy=True)
        pixels.setflags(write=False)

        sample = FrameSample(
            frame_id=next(self._ids),
            captured_at=captured_at,
            image=pixels,
            sharpness=compute_sharpness(pixels),
            brightness=compute_brightness(pixels),
            fast_hash=compute_fast_hash(pixels),
            perceptual_hash=compute_perceptual_hash(pixels),
            sharpness_floor=self.thresholds.sharpness_floor,
            brightness_floor=self.thresholds.brightness_floor,
            motion_blur_threshold=self.thresholds.motion_blur_threshold,
        )
        logger.debug(
            f"Evaluated {sample!r}: stable={sample.is_stable}, "
            f"motion_blur={sample.is_motion_blurred}"
        )
        return sample
