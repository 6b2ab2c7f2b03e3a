"""
Device command dispatch.
"""

from .dispatcher import ActionDispatcher, describe_error

__all__ = ["ActionDispatcher", "describe_error"]
