"""
Work Study State Monitor

Interprets streams of pose, hand and object detections into work-element
states for industrial motion study, and flags deviations from the expected
sequence in real time.
"""

__version__ = "1.0.0"

from .pipeline import Pipeline
from .config import Config

__all__ = ["Pipeline", "Config"]
