"""
Outcome Codes
=============

Fixed set of machine-readable outcomes for admission ticks and request
submissions.

Rules:
    - No free-text explanations
    - One clear cause per code
"""

from enum import Enum


class AdmissionOutcome(str, Enum):
    """
    Result of one admission buffer tick.

    Attributes:
        PAUSED: Not in passive mode or paused; buffer discarded
        BACKPRESSURE: Inference in flight; buffer kept for the next tick
        EMPTY: Nothing buffered
        DUPLICATE: Selected frame repeats the last one sent; dropped
        SELECTED: A frame was handed off for inference
    """

    PAUSED = "PAUSED"
    BACKPRESSURE = "BACKPRESSURE"
    EMPTY = "EMPTY"
    DUPLICATE = "DUPLICATE"
    SELECTED = "SELECTED"


class RequestOutcome(str, Enum):
    """
    Result of handing a request to the controller.

    Attributes:
        STARTED: Inference started immediately
        QUEUED: Passive request appended to the passive queue
        PENDING: Active request held until the session frees up
        SUPERSEDED: Active request held, replacing an older pending one
        REJECTED: Failed validation; never reached the session
        BUSY: Not accepted in the current mode
    """

    STARTED = "STARTED"
    QUEUED = "QUEUED"
    PENDING = "PENDING"
    SUPERSEDED = "SUPERSEDED"
    REJECTED = "REJECTED"
    BUSY = "BUSY"
