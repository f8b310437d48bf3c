"""
Sightline
=========

Admission control and inference session lifecycle for on-device visual alerts.

This package turns a continuous camera feed (and, on demand, a spoken question)
into short spoken alerts using a single-sequence, context-limited inference
session that can serve one request at a time.

Components:
    - quality: Frame scoring (sharpness, brightness, fingerprints)
    - admission: Rolling frame buffer and scene-change detection
    - session: Model runtime contract and inference session manager
    - control: Request validation, mode/queue controller, watchdog
    - pipeline: Wiring of the above plus the fixed tick loop

Example:
    from sightline.config import load_config
    from sightline.pipeline import PerceptionPipeline
    from sightline.session import MockModelRuntime

    pipeline = PerceptionPipeline(load_config(), MockModelRuntime())
    await pipeline.start()
"""

__version__ = "0.1.0"
__author__ = "Sightline Project"

__all__ = [
    "__version__",
]
