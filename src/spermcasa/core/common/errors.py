#!/usr/bin/env python3
"""
Exception types raised by the analysis core.
"""


class InputError(ValueError):
    """Unreadable, unsupported or empty input; analysis cannot start."""


class DetectorError(RuntimeError):
    """The detector is unavailable or an inference call failed."""


class FrameOrderError(ValueError):
    """Frames were delivered to the tracker out of increasing index order."""
