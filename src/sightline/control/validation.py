"""
Request Validation
==================

Fail-fast checks applied before any request reaches the session manager.

Rules:
    - Prompt: non-empty after trimming, at most max_prompt_length characters
    - Image: must decode, at least min_image_size pixels on each side
    - Active frames: sharp and bright enough to answer a question about
"""

import logging
from typing import Optional, Union

import numpy as np

from sightline.config import ControlConfig
from sightline.errors import ImageDecodeError, RequestValidationError
from sightline.models.frame import FrameSample
from sightline.models.requests import ActiveRequest
from sightline.quality.image_ops import decode_image, ensure_bgr


logger = logging.getLogger(__name__)


def validate_prompt(prompt: Optional[str], max_length: int = 512) -> str:
    """
    Validate and trim a user prompt.

    Returns:
        The trimmed prompt

    Raises:
        RequestValidationError: If the prompt is empty or too long
    """
    trimmed = (prompt or "").strip()
    if not trimmed:
        raise RequestValidationError("Prompt is empty")
    if len(trimmed) > max_length:
        raise RequestValidationError(
            f"Prompt too long ({len(trimmed)} characters, maximum {max_length})"
        )
    return trimmed


def validate_image(
    image: Union[np.ndarray, bytes, None],
    min_size: int = 100,
) -> np.ndarray:
    """
    Validate that an image decodes and meets the minimum dimensions.

    Args:
        image: Pixel array or encoded bytes
        min_size: Minimum width and height in pixels

    Returns:
        BGR pixel array

    Raises:
        RequestValidationError: If the image is missing, undecodable or small
    """
    if image is None:
        raise RequestValidationError("No camera frame available")

    try:
        if isinstance(image, (bytes, bytearray)):
            pixels = decode_image(bytes(image))
        else:
            pixels = ensure_bgr(image)
    except ImageDecodeError as e:
        raise RequestValidationError(f"Invalid image data: {e}") from e

    height, width = pixels.shape[:2]
    if width < min_size or height < min_size:
        raise RequestValidationError(
            f"Image too small ({width}x{height}, minimum {min_size}x{min_size})"
        )
    return pixels


def validate_frame_quality(frame: FrameSample) -> None:
    """
    Reject frames too blurry or dark to answer a question about.

    Raises:
        RequestValidationError: With a user-facing hint
    """
    if not frame.is_stable:
        raise RequestValidationError("Frame not sharp enough. Try again.")
    if frame.brightness <= frame.brightness_floor:
        raise RequestValidationError("Frame too dark. Try again.")


class RequestValidator:
    """
    Validation entry point used by the controller.

    Example:
        validator = RequestValidator(ControlConfig())
        request = validator.validate_active("what is ahead", frame)
    """

    def __init__(self, config: Optional[ControlConfig] = None) -> None:
        self.config = config or ControlConfig()

    def validate_active(self, prompt: Optional[str], frame: Optional[FrameSample]) -> ActiveRequest:
        trimmed = validate_prompt(prompt, self.config.max_prompt_length)
        if frame is None:
            raise RequestValidationError("No camera frame available")
        validate_image(frame.image, self.config.min_image_size)
        validate_frame_quality(frame)
        return ActiveRequest.for_frame(frame, trimmed)

    def validate_passive(self, frame: FrameSample) -> None:
        validate_image(frame.image, self.config.min_image_size)
