"""
Errors raised by the registration pipeline.

Malformed input is reported with the built-in ``ValueError``; the classes below
describe frames that are well formed but do not carry enough information to
produce an estimate.
"""


class RegistrationError(Exception):
    """Base class for algorithmic failures of a single update."""


class InsufficientFeatures(RegistrationError):
    """One of the descriptor sets to be matched is empty."""


class InsufficientCorrespondences(RegistrationError):
    """Fewer than four 3D-2D correspondences were handed to the PnP solver."""


class SolverDivergence(RegistrationError):
    """The PnP solver could not produce a numerically valid pose."""
