"""Exceptions shared by the matrix kernel and the Kalman filter."""

from __future__ import annotations

import enum


class InversionStatus(enum.IntEnum):
    """Result code of :func:`torch_lkf.matrix.invert`."""

    OK = 0
    SINGULAR = 1
    ALLOCATION_FAILURE = 2


class AllocationFailure(MemoryError):
    """A matrix buffer could not be allocated."""


class DimensionMismatch(ValueError):
    """Shapes of the given matrices are inconsistent."""


class SingularMatrixError(ArithmeticError):
    """A matrix that had to be inverted is singular.

    Attributes:
        status (InversionStatus): Status returned by the inversion.
        near_singular (bool): True if an exact-zero pivot was substituted during elimination.
    """

    def __init__(self, message: str, status=InversionStatus.SINGULAR, near_singular=False) -> None:
        super().__init__(message)
        self.status = status
        self.near_singular = near_singular
