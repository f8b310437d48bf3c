"""
Data Models
===========

Value types and state models for Sightline.

Models:
    Frames:
        - FrameSample: Scored, immutable camera frame

    Requests:
        - PassiveRequest, ActiveRequest: Inference requests
        - StreamChunk, ChunkStatus: Streamed response elements

    State:
        - SessionState, Mode: Lifecycle enums
        - SessionSnapshot: Session status report

    Outcomes:
        - AdmissionOutcome, RequestOutcome
"""

from sightline.models.frame import FrameSample
from sightline.models.requests import (
    ActiveRequest,
    ChunkStatus,
    InferenceRequest,
    PassiveRequest,
    StreamChunk,
)
from sightline.models.state import Mode, SessionSnapshot, SessionState
from sightline.models.reason_codes import AdmissionOutcome, RequestOutcome

__all__ = [
    # Frames
    "FrameSample",
    # Requests
    "PassiveRequest",
    "ActiveRequest",
    "InferenceRequest",
    "StreamChunk",
    "ChunkStatus",
    # State
    "SessionState",
    "Mode",
    "SessionSnapshot",
    # Outcomes
    "AdmissionOutcome",
    "RequestOutcome",
]
