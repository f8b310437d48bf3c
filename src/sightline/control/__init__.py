"""
Control Module
==============

Request arbitration on top of the single inference session.

Components:
    - ModeQueueController: passive/active modes, queues, timeouts
    - Watchdog: stuck-busy detection
    - RequestValidator: fail-fast prompt/image checks
    - SpeechOutput: (partial_text, is_final) hand-off to speech
"""

from sightline.control.controller import ControllerMetrics, ModeQueueController
from sightline.control.speech import SpeechOutput, Utterance
from sightline.control.validation import (
    RequestValidator,
    validate_frame_quality,
    validate_image,
    validate_prompt,
)
from sightline.control.watchdog import Watchdog

__all__ = [
    "ModeQueueController",
    "ControllerMetrics",
    "Watchdog",
    "RequestValidator",
    "validate_prompt",
    "validate_image",
    "validate_frame_quality",
    "SpeechOutput",
    "Utterance",
]
