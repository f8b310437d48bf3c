"""
Session and Mode State Models
=============================

Core Concepts:
    - SessionState: lifecycle of the single inference session
    - Mode: what the controller is doing on behalf of the user
    - SessionSnapshot: read-only status report of the session

Session lifecycle:
    IDLE -> INITIALIZING -> READY <-> BUSY -> RECOVERING -> READY
    ERROR is reachable from INITIALIZING, BUSY and RECOVERING on an
    unrecoverable failure and is only left by an explicit initialize().

Mode transitions:
    PASSIVE -> ACTIVE:        user trigger (passive admission paused)
    ACTIVE -> ACTIVE_BUSY:    validated question submitted
    ACTIVE_BUSY -> PASSIVE:   active inference finished (any outcome)
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SessionState(str, Enum):
    """
    Lifecycle states of the inference session.

    Attributes:
        IDLE: Created, not yet initialized
        INITIALIZING: Loading the runtime / opening the first session
        READY: Accepting a request
        BUSY: One inference executing
        RECOVERING: Session being rebuilt
        ERROR: Fatal failure, waiting for an explicit retry
    """

    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    BUSY = "busy"
    RECOVERING = "recovering"
    ERROR = "error"


class Mode(str, Enum):
    """Controller modes."""

    PASSIVE = "passive"
    ACTIVE = "active"
    ACTIVE_BUSY = "active_busy"


class SessionSnapshot(BaseModel):
    """
    Point-in-time view of the inference session.

    Attributes:
        state: Current SessionState
        generation: Number of times the session has been (re)built
        inference_count: Completed inferences since the last rebuild
        error_count: Terminal errors since the last rebuild
        executing: Whether an inference is in flight
        tokens_used: Estimated context tokens consumed
        last_reset_at: Clock value of the last rebuild, if any
        last_error: Message of the most recent failure
        critical_error: Fatal initialization message, if in ERROR
    """

    state: SessionState = Field(default=SessionState.IDLE)
    generation: int = Field(default=0, ge=0)
    inference_count: int = Field(default=0, ge=0)
    error_count: int = Field(default=0, ge=0)
    executing: bool = Field(default=False)
    tokens_used: int = Field(default=0, ge=0)
    last_reset_at: Optional[float] = Field(default=None)
    last_error: Optional[str] = Field(default=None)
    critical_error: Optional[str] = Field(default=None)
