"""
Admission Module
================

Decides which captured frame, if any, is worth an inference call.

Components:
    - AdmissionBuffer: Rolling window with a once-per-tick selection
    - SceneChangeDetector: Flags scene transitions against the last
      described frame
"""

from sightline.admission.buffer import AdmissionBuffer, AdmissionResult
from sightline.admission.scene import SceneChangeDetector, scene_changed

__all__ = [
    "AdmissionBuffer",
    "AdmissionResult",
    "SceneChangeDetector",
    "scene_changed",
]
