"""Utility exports for lane-based concurrency."""

from persistor.utils.lanes import Lane, current_lane, wait_for

__all__ = ["Lane", "current_lane", "wait_for"]
