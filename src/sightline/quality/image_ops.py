"""
Image Operations
================

Decoding and geometric normalization of captured images.

Design Rules:
    - This is the ONLY place in the codebase that decodes image bytes
    - Validates shape and dtype
    - Fails fast on corrupt input
    - Orientation is corrected before any quality scoring
"""

import logging

import cv2
import numpy as np

from sightline.errors import ImageDecodeError


logger = logging.getLogger(__name__)


_ROTATIONS = {
    90: cv2.ROTATE_90_CLOCKWISE,
    180: cv2.ROTATE_180,
    270: cv2.ROTATE_90_COUNTERCLOCKWISE,
}


def decode_image(data: bytes) -> np.ndarray:
    """
    Decode JPEG/PNG bytes to a BGR numpy array.

    Args:
        data: Encoded image bytes

    Returns:
        BGR image as np.ndarray (H, W, 3), dtype=uint8

    Raises:
        ImageDecodeError: If decoding fails or image is invalid
    """
    if not data:
        raise ImageDecodeError("Empty image data")

    try:
        nparr = np.frombuffer(data, np.uint8)
        bgr = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
    except cv2.error as e:
        raise ImageDecodeError(f"cv2.imdecode failed: {e}")

    if bgr is None:
        raise ImageDecodeError("Failed to decode image: cv2.imdecode returned None")

    return ensure_bgr(bgr)


def ensure_bgr(image: np.ndarray) -> np.ndarray:
    """
    Validate a pixel array and normalize it to 3-channel BGR uint8.

    Raises:
        ImageDecodeError: If the array is not an 8-bit gray/BGR/BGRA image
    """
    if not isinstance(image, np.ndarray):
        raise ImageDecodeError(f"Expected numpy array, got {type(image).__name__}")
    if image.dtype != np.uint8:
        raise ImageDecodeError(f"Invalid dtype: {image.dtype}")

    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.ndim == 3 and image.shape[2] == 3:
        return image
    if image.ndim == 3 and image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)

    raise ImageDecodeError(f"Invalid image shape: {image.shape}")


def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Return a single-channel view of a gray or BGR image."""
    if image.ndim == 2:
        return image
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def correct_orientation(image: np.ndarray, degrees: int = 0) -> np.ndarray:
    """
    Rotate an image upright.

    Args:
        image: Image as captured
        degrees: Clockwise rotation needed (0, 90, 180 or 270)

    Returns:
        Upright image (the input itself when degrees is 0)
    """
    degrees = degrees % 360
    if degrees == 0:
        return image
    if degrees not in _ROTATIONS:
        raise ValueError(f"Unsupported orientation: {degrees}")
    return cv2.rotate(image, _ROTATIONS[degrees])


def center_crop_square(image: np.ndarray) -> np.ndarray:
    """Crop the largest centered square (the model expects square input)."""
    height, width = image.shape[:2]
    side = min(height, width)
    y = (height - side) // 2
    x = (width - side) // 2
    return image[y:y + side, x:x + side]
