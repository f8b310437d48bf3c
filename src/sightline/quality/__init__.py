"""
Quality Module
==============

Frame scoring and image normalization.

Components:
    - FrameEvaluator: Builds scored FrameSample values
    - compute_*: Pure scoring functions
    - decode_image / correct_orientation / center_crop_square: image helpers
"""

from sightline.quality.evaluator import (
    FrameEvaluator,
    QualityThresholds,
    compute_brightness,
    compute_fast_hash,
    compute_perceptual_hash,
    compute_sharpness,
    hamming_distance,
)
from sightline.quality.image_ops import (
    center_crop_square,
    correct_orientation,
    decode_image,
    ensure_bgr,
)

__all__ = [
    "FrameEvaluator",
    "QualityThresholds",
    "compute_sharpness",
    "compute_brightness",
    "compute_fast_hash",
    "compute_perceptual_hash",
    "hamming_distance",
    "decode_image",
    "ensure_bgr",
    "correct_orientation",
    "center_crop_square",
]
