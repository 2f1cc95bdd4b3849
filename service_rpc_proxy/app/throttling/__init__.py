"""Duplicate request throttling."""

from .duplicate_detector import DuplicateDetector

__all__ = ["DuplicateDetector"]
