"""
Camera exposure tracking.
"""

from .exposure_tracker import ExposureSession, ExposureTracker

__all__ = ["ExposureSession", "ExposureTracker"]
