"""
Session Module
==============

The model runtime contract and the owner of the single inference session.

Components:
    - ModelRuntime / RuntimeSession: black-box generation contract
    - MockModelRuntime: Deterministic runtime simulating the token budget
    - BlockingRuntimeAdapter: Runs blocking backends on a dedicated thread
    - InferenceSessionManager: Serialization, resets, retries

Design Philosophy:
    The model is a pluggable black box. Reset and retry behaviour is defined
    only against generate() and the context-overflow error class.
"""

from sightline.session.runtime import (
    GenerationParams,
    MockModelRuntime,
    MockRuntimeSession,
    ModelRuntime,
    RuntimeSession,
    is_context_overflow,
)
from sightline.session.executor import BlockingRuntimeAdapter
from sightline.session.manager import InferenceSessionManager

__all__ = [
    "GenerationParams",
    "ModelRuntime",
    "RuntimeSession",
    "MockModelRuntime",
    "MockRuntimeSession",
    "is_context_overflow",
    "BlockingRuntimeAdapter",
    "InferenceSessionManager",
]
