"""
Inference Requests and Stream Chunks
====================================

Value types exchanged between the controller and the session manager.

Requests:
    - PassiveRequest: background description of an admitted frame
    - ActiveRequest: answer to a user question about a frame

Each request is consumed exactly once (executed, superseded or dropped)
and never re-entered.

Chunks:
    The session manager streams StreamChunk values. Exactly one chunk per
    stream has is_final=True and it is always the last one.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from sightline.models.frame import FrameSample


@dataclass(frozen=True, slots=True)
class PassiveRequest:
    """Background description request (no prompt)."""

    frame: FrameSample

    @property
    def is_active(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class ActiveRequest:
    """
    User question about a frame.

    Owns the fingerprints of the frame it was issued against so a
    later resubmission can be checked for staleness.
    """

    frame: FrameSample
    prompt: str
    fast_hash: int
    perceptual_hash: int

    @classmethod
    def for_frame(cls, frame: FrameSample, prompt: str) -> "ActiveRequest":
        return cls(
            frame=frame,
            prompt=prompt,
            fast_hash=frame.fast_hash,
            perceptual_hash=frame.perceptual_hash,
        )

    @property
    def is_active(self) -> bool:
        return True


InferenceRequest = Union[PassiveRequest, ActiveRequest]


class ChunkStatus(str, Enum):
    """
    Status carried by each streamed chunk.

    Attributes:
        PARTIAL: Intermediate text, more follows
        COMPLETE: Successful end of stream
        ERROR: Terminal processing failure (after retries)
        BUSY: Rejected, another inference is executing
        NOT_READY: Rejected, session is not READY
        TIMEOUT: Abandoned after the wall-clock timeout
    """

    PARTIAL = "partial"
    COMPLETE = "complete"
    ERROR = "error"
    BUSY = "busy"
    NOT_READY = "not_ready"
    TIMEOUT = "timeout"


@dataclass(frozen=True, slots=True)
class StreamChunk:
    """
    One element of a response stream.

    Attributes:
        text: Text delta for PARTIAL chunks, message for terminal ones
        is_final: True only on the last chunk of a stream
        status: ChunkStatus of this chunk
        attempt: 1-based attempt number that produced the chunk
    """

    text: str
    is_final: bool = False
    status: ChunkStatus = ChunkStatus.PARTIAL
    attempt: int = 1

    @property
    def is_error(self) -> bool:
        return self.status in (
            ChunkStatus.ERROR,
            ChunkStatus.BUSY,
            ChunkStatus.NOT_READY,
            ChunkStatus.TIMEOUT,
        )

    @classmethod
    def terminal(
        cls,
        status: ChunkStatus,
        text: str = "",
        attempt: int = 1,
    ) -> "StreamChunk":
        return cls(text=text, is_final=True, status=status, attempt=attempt)


def request_kind(request: Optional[InferenceRequest]) -> str:
    """Short label for logs."""
    if request is None:
        return "none"
    return "active" if request.is_active else "passive"
