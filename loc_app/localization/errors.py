"""
Exceptions raised by the estimation layer.

They never cross the Localizer boundary: the facade turns every one of them
into a failed (ok=False) localization.
"""


class LocalizationError(Exception):
    """A localization attempt did not produce a usable pose."""


class InsufficientCorrespondencesError(LocalizationError):
    """Fewer correspondences than the minimal solver needs."""


class NoReliablePoseError(LocalizationError):
    """No consensus set reached the required size."""


class DegenerateConfigurationError(LocalizationError):
    """The 3D points are in a configuration the solver cannot handle (collinear, coplanar)."""


__all__ = [
    "LocalizationError",
    "InsufficientCorrespondencesError",
    "NoReliablePoseError",
    "DegenerateConfigurationError",
]
