"""
Device property polling.
"""

from .profiles import PROFILES, DeviceProfile, get_profile
from .property_poller import PollingHandle, PropertyPoller

__all__ = [
    "PROFILES",
    "DeviceProfile",
    "get_profile",
    "PollingHandle",
    "PropertyPoller",
]
