"""Torch-LKF: Kalman filtering of linear time-invariant systems on a dense matrix kernel.

torch-lkf estimates the hidden state of a discrete LTI system with inputs

    x_{k+1} = A x_k + B u_k
    y_k     = C x_k + D u_k

from noisy measurements, using a classic (linear, Gaussian) Kalman filter.

Key features
------------
- **Dense matrix kernel**: flat row-major float64 buffers backed by PyTorch, with
  elementwise ops, products, transpose, LU decomposition with implicit scaled
  partial pivoting, inversion and determinant.
- **Explicit singularity handling**: the kernel reports singular matrices through
  result values, and the filter either fails (``STRICT``) or degrades and flags
  the step (``DEGRADE``).
- **Single steps or whole runs**: :meth:`~torch_lkf.KalmanFilter.tick` and
  :meth:`~torch_lkf.KalmanFilter.process`, with an optional hook to update the
  model between steps.
- **Command line**: ``torch-lkf`` filters a stream of scalar measures read on stdin.

Getting started
---------------
The core API consists of:
- :class:`~torch_lkf.Matrix` and the kernel functions of :mod:`torch_lkf.matrix`.
- :class:`~torch_lkf.LTISystem`, :class:`~torch_lkf.NoiseModel` and
  :class:`~torch_lkf.FilterState` to describe the model and the belief.
- :class:`~torch_lkf.KalmanFilter` with :meth:`~torch_lkf.KalmanFilter.tick` and
  :meth:`~torch_lkf.KalmanFilter.process`.

Notes on shapes
---------------
Vectors are column matrices: ``x`` is ``(dim_x, 1)``, ``u`` is ``(dim_u, 1)`` and
``y`` is ``(dim_y, 1)``. Shapes are validated once at each filter entry point.
"""

from .errors import AllocationFailure, DimensionMismatch, InversionStatus, SingularMatrixError
from .kalman_filter import (
    FilterState,
    KalmanFilter,
    LTISystem,
    ModelUpdateHook,
    NoiseModel,
    ProcessResult,
    SingularPolicy,
    TickResult,
    process,
    tick,
)
from .matrix import Inversion, LUDecomposition, Matrix, determinant, invert, lu_decompose

__all__ = [
    "AllocationFailure",
    "DimensionMismatch",
    "FilterState",
    "Inversion",
    "InversionStatus",
    "KalmanFilter",
    "LTISystem",
    "LUDecomposition",
    "Matrix",
    "ModelUpdateHook",
    "NoiseModel",
    "ProcessResult",
    "SingularMatrixError",
    "SingularPolicy",
    "TickResult",
    "determinant",
    "invert",
    "lu_decompose",
    "process",
    "tick",
]
__version__ = "0.1.0"
