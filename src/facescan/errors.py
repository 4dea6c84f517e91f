"""Exception types raised by the face scanner."""

from __future__ import annotations


class FaceScanError(Exception):
    """Base class for scanner errors."""


class SourcePathError(FaceScanError):
    """The scan root is missing, not a directory, or unreadable."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class DetectionTimeout(FaceScanError):
    """A detector call exceeded its deadline."""


__all__ = ["DetectionTimeout", "FaceScanError", "SourcePathError"]
