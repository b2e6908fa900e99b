"""Dense real matrix kernel.

A :class:`Matrix` is a flat, row-major ``torch.float64`` buffer that carries its own number of rows and columns.
Kernel operations check operand shapes once per call and then run on whole buffers with torch: there is no
per-element validation.

Singularity is reported through values rather than exceptions:

- :func:`lu_decompose` flags a *hard* singular matrix (an all-zero row) before any elimination, and records the
  columns where an exact-zero pivot had to be replaced by ``NONZERO`` to continue (*near* singular).
- :func:`invert` returns an :class:`Inversion` with an :class:`~torch_lkf.errors.InversionStatus`.
"""

from __future__ import annotations

import contextlib
import dataclasses
import logging

import torch
import torch.linalg

from .errors import AllocationFailure, DimensionMismatch, InversionStatus

logger = logging.getLogger(__name__)

DTYPE = torch.float64
EPS = 1e-16  # Display/comparison only, never used to branch
NONZERO = 1e-100  # Replaces an exact-zero pivot


@contextlib.contextmanager
def _allocating(rows: int, cols: int):
    """Convert torch allocator errors into AllocationFailure."""
    try:
        yield
    except MemoryError as exc:
        raise AllocationFailure(f"Unable to allocate a ({rows}, {cols}) matrix") from exc
    except RuntimeError as exc:
        if "alloc" not in str(exc).lower():
            raise
        raise AllocationFailure(f"Unable to allocate a ({rows}, {cols}) matrix: {exc}") from exc


def _check_dims(rows, cols) -> None:
    for dim in (rows, cols):
        if isinstance(dim, bool) or not isinstance(dim, int) or dim <= 0:
            raise DimensionMismatch(f"Matrix dimensions must be positive integers, got ({rows}, {cols})")


@dataclasses.dataclass(eq=False)
class Matrix:
    """Dense real matrix.

    Elements are stored in a flat row-major buffer: ``a[i, j]`` lives at ``data[i * cols + j]``.

    The buffer is owned by the matrix. It can be released explicitly with :meth:`release` (exactly once), after
    which any use of the matrix raises.

    Attributes:
        data (torch.Tensor): Flat row-major buffer (float64, contiguous).
            Shape: ``(rows * cols,)``
        rows (int): Number of rows.
        cols (int): Number of columns.
    """

    data: torch.Tensor
    rows: int
    cols: int

    def __post_init__(self) -> None:
        _check_dims(self.rows, self.cols)
        if self.data.ndim != 1 or self.data.numel() != self.rows * self.cols:
            raise DimensionMismatch(
                f"A buffer of shape {tuple(self.data.shape)} cannot hold a ({self.rows}, {self.cols}) matrix"
            )
        self.data = self.data.to(DTYPE).contiguous()
        self._released = False

    @classmethod
    def from_values(cls, values) -> Matrix:
        """Build a matrix from nested sequences, a tensor or a scalar.

        The values are always copied. Scalars give a 1x1 matrix and 1d inputs give a column vector.

        Args:
            values (torch.Tensor | Sequence | float): Values of the matrix.

        Returns:
            Matrix: A new matrix holding the values.
        """
        tensor = torch.as_tensor(values, dtype=DTYPE)
        if tensor.ndim == 0:
            tensor = tensor.reshape(1, 1)
        elif tensor.ndim == 1:
            tensor = tensor[:, None]
        elif tensor.ndim != 2:
            raise DimensionMismatch(f"Expected at most 2 dimensions, got shape {tuple(tensor.shape)}")

        rows, cols = tensor.shape
        _check_dims(rows, cols)
        with _allocating(rows, cols):
            data = tensor.reshape(-1).clone()
        return cls(data, rows, cols)

    @property
    def shape(self) -> tuple[int, int]:
        return self.rows, self.cols

    @property
    def released(self) -> bool:
        """Whether the buffer has been released."""
        return self._released

    def buffer(self) -> torch.Tensor:
        """Return the flat buffer, ensuring it is still owned."""
        if self._released:
            raise ValueError("Matrix buffer has been released")
        return self.data

    def view(self) -> torch.Tensor:
        """2d view on the buffer (shares memory).

        Returns:
            torch.Tensor: The matrix as a tensor
                Shape: ``(rows, cols)``
        """
        return self.buffer().view(self.rows, self.cols)

    def release(self) -> None:
        """Release the buffer. A matrix can only be released once."""
        if self._released:
            raise ValueError("Matrix buffer already released")
        self.data = torch.empty(0, dtype=DTYPE)
        self._released = True

    def clone(self) -> Matrix:
        """Return a deep copy of the matrix."""
        return dup(self)

    def tolist(self) -> list[list[float]]:
        return self.view().tolist()

    def allclose(self, other: Matrix, rtol=1e-5, atol=1e-8) -> bool:
        """Check that both matrices share the same shape and close values."""
        return self.shape == other.shape and torch.allclose(self.buffer(), other.buffer(), rtol=rtol, atol=atol)

    def _offset(self, idx) -> int:
        i, j = idx
        if not (0 <= i < self.rows and 0 <= j < self.cols):
            raise IndexError(f"Index ({i}, {j}) out of range for a ({self.rows}, {self.cols}) matrix")
        return i * self.cols + j

    def __getitem__(self, idx: tuple[int, int]) -> float:
        return float(self.buffer()[self._offset(idx)])

    def __setitem__(self, idx: tuple[int, int], value: float) -> None:
        self.buffer()[self._offset(idx)] = value

    def __repr__(self) -> str:
        if self._released:
            return f"Matrix({self.rows}x{self.cols}, released)"

        return "Matrix([\n" + "\n".join(format_rows(self)) + "\n])"


def as_matrix(values) -> Matrix:
    """Return ``values`` if it is already a Matrix, else build one with :meth:`Matrix.from_values`."""
    if isinstance(values, Matrix):
        return values
    return Matrix.from_values(values)


def format_rows(matrix: Matrix) -> list[str]:
    """Format each row of a matrix. Values whose magnitude does not exceed ``EPS`` are displayed as 0."""
    return ["".join(f"  {0 if abs(value) <= EPS else value:4g}" for value in row) for row in matrix.tolist()]


def dump(matrix: Matrix, name="") -> str:
    """Render a named matrix as text, one line per row (debug display)."""
    return "\n".join([f"{name}:", *format_rows(matrix)])


# Allocation


def alloc(rows: int, cols: int) -> Matrix:
    """Allocate an uninitialized matrix.

    Raises:
        DimensionMismatch: If a dimension is not a positive integer.
        AllocationFailure: If memory cannot be obtained.
    """
    _check_dims(rows, cols)
    with _allocating(rows, cols):
        data = torch.empty(rows * cols, dtype=DTYPE)
    return Matrix(data, rows, cols)


def release(matrix: Matrix) -> None:
    matrix.release()


def copy(dst: Matrix, src: Matrix) -> Matrix:
    """Copy the elements of ``src`` into ``dst`` (already sized)."""
    _check_same_shape("copy", dst, src)
    dst.buffer().copy_(src.buffer())
    return dst


def dup(src: Matrix) -> Matrix:
    """Allocate a new matrix and copy ``src`` into it."""
    return copy(alloc(src.rows, src.cols), src)


def zeros(rows: int, cols: int) -> Matrix:
    out = alloc(rows, cols)
    out.data.zero_()
    return out


def ones(rows: int, cols: int) -> Matrix:
    out = alloc(rows, cols)
    out.data.fill_(1.0)
    return out


def identity(rows: int, cols: int | None = None, *, out: Matrix | None = None) -> Matrix:
    """Write ones on the main diagonal and zeros elsewhere (rectangular shapes allowed)."""
    out = _output(out, rows, rows if cols is None else cols)
    out.buffer().zero_()
    out.view().fill_diagonal_(1.0)
    return out


# Shape helpers


def _check_same_shape(operation: str, a: Matrix, b: Matrix) -> None:
    if a.shape != b.shape:
        raise DimensionMismatch(f"{operation}: shapes {a.shape} and {b.shape} do not match")


def _check_square(operation: str, a: Matrix) -> None:
    if a.rows != a.cols:
        raise DimensionMismatch(f"{operation}: expected a square matrix, got {a.shape}")


def _output(out: Matrix | None, rows: int, cols: int) -> Matrix:
    if out is None:
        return alloc(rows, cols)
    if out.shape != (rows, cols):
        raise DimensionMismatch(f"Output has shape {out.shape}, expected {(rows, cols)}")
    out.buffer()
    return out


def _shares_memory(out: Matrix | None, *others: Matrix) -> bool:
    if out is None:
        return False
    return any(out.buffer().data_ptr() == other.buffer().data_ptr() for other in others)


# Elementwise operations


def add(a: Matrix, b: Matrix, *, out: Matrix | None = None) -> Matrix:
    """C = A + B"""
    _check_same_shape("add", a, b)
    out = _output(out, a.rows, a.cols)
    torch.add(a.buffer(), b.buffer(), out=out.data)
    return out


def sub(a: Matrix, b: Matrix, *, out: Matrix | None = None) -> Matrix:
    """C = A - B"""
    _check_same_shape("sub", a, b)
    out = _output(out, a.rows, a.cols)
    torch.sub(a.buffer(), b.buffer(), out=out.data)
    return out


def scale(a: Matrix, factor: float, *, out: Matrix | None = None) -> Matrix:
    """B = factor * A"""
    out = _output(out, a.rows, a.cols)
    torch.mul(a.buffer(), factor, out=out.data)
    return out


def add_scalar(a: Matrix, value: float, *, out: Matrix | None = None) -> Matrix:
    """B = value + A"""
    out = _output(out, a.rows, a.cols)
    torch.add(a.buffer(), value, out=out.data)
    return out


# Products


def transpose(src: Matrix, *, out: Matrix | None = None) -> Matrix:
    """Write the transpose of ``src`` (rows x cols) into a (cols x rows) matrix.

    Raises:
        ValueError: If ``out`` shares its buffer with ``src``.
    """
    if _shares_memory(out, src):
        raise ValueError("transpose: output cannot alias the input")
    out = _output(out, src.cols, src.rows)
    out.view().copy_(src.view().T)
    return out


def multiply(a: Matrix, b: Matrix, *, out: Matrix | None = None) -> Matrix:
    """C = A B, with A (n x m), B (m x k) and C (n x k).

    Raises:
        DimensionMismatch: If ``b.rows != a.cols``.
        ValueError: If ``out`` shares its buffer with an operand.
    """
    if a.cols != b.rows:
        raise DimensionMismatch(f"multiply: cannot multiply {a.shape} by {b.shape}")
    if _shares_memory(out, a, b):
        raise ValueError("multiply: output cannot alias an operand")
    out = _output(out, a.rows, b.cols)
    torch.mm(a.view(), b.view(), out=out.view())
    return out


def trace(a: Matrix) -> float:
    _check_square("trace", a)
    return float(a.view().diagonal().sum())


def diagonal_product(a: Matrix) -> float:
    """Product of the main diagonal elements."""
    _check_square("diagonal_product", a)
    return float(a.view().diagonal().prod())


# Decomposition


@dataclasses.dataclass
class LUDecomposition:
    """LU decomposition with row pivoting: ``P A = L U``.

    Attributes:
        lu (Matrix): L and U packed in a single matrix. The unit diagonal of L is implicit.
        permutation (list[int]): ``permutation[i]`` is the row of the original matrix found at row ``i``.
        parity (int): +1 for an even number of row interchanges, -1 otherwise.
        singular (bool): True if a null row was found before elimination. ``lu`` is then left undecomposed.
        substituted_pivots (tuple[int, ...]): Columns whose exact-zero pivot was replaced by ``NONZERO``.
    """

    lu: Matrix
    permutation: list[int]
    parity: int
    singular: bool = False
    substituted_pivots: tuple[int, ...] = ()

    @property
    def near_singular(self) -> bool:
        """True if elimination had to substitute an exact-zero pivot."""
        return bool(self.substituted_pivots)

    def lower(self) -> Matrix:
        """Unit lower triangular factor L."""
        packed = self.lu.view()
        return Matrix.from_values(packed.tril(-1) + torch.eye(self.lu.rows, dtype=DTYPE))

    def upper(self) -> Matrix:
        """Upper triangular factor U."""
        return Matrix.from_values(self.lu.view().triu())

    def permutation_matrix(self) -> Matrix:
        """Row permutation P such that ``P A = L U``."""
        out = zeros(self.lu.rows, self.lu.rows)
        out.view()[list(range(self.lu.rows)), self.permutation] = 1.0
        return out


def lu_decompose(a: Matrix, *, inplace=False) -> LUDecomposition:
    """Decompose a square matrix with implicit scaled partial pivoting.

    Each row is weighted by the inverse of its largest magnitude (computed once, before elimination). At each
    column, the pivot is the row maximizing the weighted magnitude of its candidate. If a row is null, the matrix is
    reported singular right away. If elimination meets an exact-zero pivot, it is replaced by ``NONZERO`` so that
    the decomposition goes on: this is only reported through ``substituted_pivots``.

    Args:
        a (Matrix): Square matrix to decompose.
        inplace (bool): If True, the packed factors are written into ``a``.
            Default: False

    Returns:
        LUDecomposition: Packed factors, permutation, parity and singularity indicators.
    """
    _check_square("lu_decompose", a)
    n = a.rows
    lu = a if inplace else dup(a)
    work = lu.view()
    permutation = list(range(n))

    largest = work.abs().amax(dim=1)
    null_rows = torch.nonzero(largest == 0)
    if null_rows.numel():
        logger.debug("Hard singular matrix: row %d is null", int(null_rows[0, 0]))
        return LUDecomposition(lu, permutation, 1, singular=True)

    scale_factors = 1.0 / largest
    parity = 1
    substituted = []

    for i in range(n):
        # argmax keeps the first maximum, and the diagonal when every candidate is null
        k = i + int(torch.argmax(work[i:, i].abs() * scale_factors[i:]))
        if k != i:
            work[[i, k]] = work[[k, i]]
            scale_factors[[i, k]] = scale_factors[[k, i]]
            permutation[i], permutation[k] = permutation[k], permutation[i]
            parity = -parity

        if work[i, i] == 0.0:
            logger.debug("Null pivot at column %d replaced by %g", i, NONZERO)
            work[i, i] = NONZERO
            substituted.append(i)

        if i + 1 < n:
            work[i + 1 :, i] /= work[i, i]
            work[i + 1 :, i + 1 :] -= torch.outer(work[i + 1 :, i], work[i, i + 1 :])

    return LUDecomposition(lu, permutation, parity, False, tuple(substituted))


@dataclasses.dataclass
class Inversion:
    """Result of :func:`invert`.

    Attributes:
        matrix (Matrix | None): The inverse. None unless ``status`` is OK.
        status (InversionStatus): OK, SINGULAR (hard singular) or ALLOCATION_FAILURE.
        near_singular (bool): True if the inverse relies on a substituted pivot (degraded but defined).
    """

    matrix: Matrix | None
    status: InversionStatus
    near_singular: bool = False

    @property
    def ok(self) -> bool:
        return self.status == InversionStatus.OK


def invert(a: Matrix) -> Inversion:
    """Invert a square matrix through its LU decomposition.

    inv(L) is built by forward substitution and inv(U) by back substitution, then inv(A) = inv(U) inv(L) P, i.e.
    the columns of inv(U) inv(L) are scattered according to the row permutation.

    Failures are reported in the returned status, this function does not raise for singular matrices nor for
    allocation failures.

    Args:
        a (Matrix): Square matrix to invert.

    Returns:
        Inversion: The inverse (if any) and the status of the inversion.
    """
    _check_square("invert", a)
    n = a.rows

    try:
        decomposition = lu_decompose(a)
        if decomposition.singular:
            return Inversion(None, InversionStatus.SINGULAR)

        with _allocating(n, n):
            packed = decomposition.lu.view()
            eye = torch.eye(n, dtype=DTYPE)
            lower_inv = torch.linalg.solve_triangular(packed, eye, upper=False, unitriangular=True)
            upper_inv = torch.linalg.solve_triangular(packed, eye, upper=True)
            product = upper_inv @ lower_inv

        inverse = alloc(n, n)
        inverse.view()[:, decomposition.permutation] = product
    except AllocationFailure:
        logger.warning("Allocation failure while inverting a (%d, %d) matrix", n, n)
        return Inversion(None, InversionStatus.ALLOCATION_FAILURE)

    return Inversion(inverse, InversionStatus.OK, decomposition.near_singular)


def determinant(a: Matrix) -> float:
    """Determinant as the signed product of the U diagonal.

    Returns 0.0 for a singular matrix (null row or substituted pivot).
    """
    decomposition = lu_decompose(a)
    if decomposition.singular or decomposition.near_singular:
        return 0.0
    return decomposition.parity * diagonal_product(decomposition.lu)
