"""LU decomposition, inversion and determinant."""

import pytest
import torch

from torch_lkf import matrix
from torch_lkf.errors import DimensionMismatch, InversionStatus
from torch_lkf.matrix import NONZERO, Matrix

FIXTURE_4X4 = [
    [0.0, 2.0, 1.0, 3.0],
    [1.0, 0.0, 2.0, 1.0],
    [3.0, 1.0, 0.0, 2.0],
    [2.0, 3.0, 1.0, 0.0],
]


def well_conditioned(dim: int) -> Matrix:
    return Matrix.from_values(torch.randn(dim, dim, dtype=torch.float64) + dim * torch.eye(dim, dtype=torch.float64))


def cofactor_determinant(rows: list[list[float]]) -> float:
    if len(rows) == 1:
        return rows[0][0]
    return sum(
        (-1) ** j * rows[0][j] * cofactor_determinant([row[:j] + row[j + 1 :] for row in rows[1:]])
        for j in range(len(rows))
    )


def test_decomposition_reconstructs_permuted_matrix():
    a = Matrix.from_values(torch.randn(5, 5, dtype=torch.float64))
    decomposition = matrix.lu_decompose(a)

    assert not decomposition.singular
    assert not decomposition.near_singular
    assert sorted(decomposition.permutation) == list(range(5))

    p_a = matrix.multiply(decomposition.permutation_matrix(), a)
    l_u = matrix.multiply(decomposition.lower(), decomposition.upper())
    assert p_a.allclose(l_u, rtol=1e-10, atol=1e-12)


def test_decomposition_parity_follows_interchanges():
    a = Matrix.from_values(FIXTURE_4X4)  # Null first pivot: requires at least one interchange
    decomposition = matrix.lu_decompose(a)

    assert decomposition.permutation[0] != 0
    sign = torch.linalg.det(decomposition.permutation_matrix().view()).item()
    assert decomposition.parity == round(sign)


def test_decomposition_uses_scaled_pivoting():
    # Without scaling, the second row would be chosen (|2| > |1|). Scaled by the largest magnitude
    # of each row, the first row is preferred (1/1 > 2/1000).
    a = Matrix.from_values([[1.0, 1.0], [2.0, 1000.0]])
    decomposition = matrix.lu_decompose(a)

    assert decomposition.permutation == [0, 1]
    assert decomposition.parity == 1


def test_decomposition_inplace():
    a = Matrix.from_values(FIXTURE_4X4)
    original = a.clone()

    decomposition = matrix.lu_decompose(a, inplace=True)
    assert decomposition.lu is a
    assert not a.allclose(original)

    decomposition = matrix.lu_decompose(original)
    assert decomposition.lu is not original
    assert original.allclose(Matrix.from_values(FIXTURE_4X4))


def test_null_row_is_hard_singular_before_elimination():
    a = Matrix.from_values([[1.0, 2.0, 3.0], [0.0, 0.0, 0.0], [4.0, 5.0, 6.0]])
    decomposition = matrix.lu_decompose(a)

    assert decomposition.singular
    assert decomposition.permutation == [0, 1, 2]
    assert decomposition.parity == 1
    assert torch.equal(decomposition.lu.view(), a.view())  # Nothing was eliminated

    inversion = matrix.invert(a)
    assert inversion.status == InversionStatus.SINGULAR
    assert inversion.matrix is None
    assert matrix.determinant(a) == 0.0

    # A well-conditioned matrix of the same shape can be inverted
    b = Matrix.from_values([[4.0, 1.0, 2.0], [1.0, 5.0, 3.0], [2.0, 3.0, 6.0]])
    inversion = matrix.invert(b)
    assert inversion.ok
    assert matrix.multiply(b, inversion.matrix).allclose(matrix.identity(3), rtol=1e-8, atol=1e-8)


def test_null_pivot_is_substituted_without_singular_flag():
    # The second row cancels during elimination: this is not caught by the scale factors
    a = Matrix.from_values([[1.0, 1.0, 0.0], [1.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
    decomposition = matrix.lu_decompose(a)

    assert not decomposition.singular
    assert decomposition.near_singular
    assert decomposition.substituted_pivots == (1,)
    assert decomposition.lu[1, 1] == NONZERO

    inversion = matrix.invert(a)
    assert inversion.status == InversionStatus.OK
    assert inversion.near_singular
    assert matrix.determinant(a) == 0.0


def test_last_null_pivot_is_substituted():
    decomposition = matrix.lu_decompose(Matrix.from_values([[1.0, 2.0], [2.0, 4.0]]))

    assert not decomposition.singular
    assert decomposition.substituted_pivots == (1,)


def test_known_inverse():
    a = Matrix.from_values([[0.2, 0.4, 0.2], [-0.2, 0.2, 0.0], [0.2, 0.2, -0.2]])
    inversion = matrix.invert(a)

    assert inversion.status == InversionStatus.OK
    assert not inversion.near_singular
    assert inversion.matrix.allclose(Matrix.from_values([[1, -3, 1], [1, 2, 1], [2, -1, -3]]))


@pytest.mark.parametrize("dim", [1, 2, 3, 5, 8])
def test_inverse_gives_identity(dim: int):
    a = well_conditioned(dim)
    inversion = matrix.invert(a)

    assert inversion.ok
    assert matrix.multiply(a, inversion.matrix).allclose(matrix.identity(dim), rtol=1e-8, atol=1e-8)
    assert matrix.multiply(inversion.matrix, a).allclose(matrix.identity(dim), rtol=1e-8, atol=1e-8)


def test_inverse_with_pivoting():
    a = Matrix.from_values(FIXTURE_4X4)
    inversion = matrix.invert(a)

    assert inversion.ok
    assert torch.allclose(inversion.matrix.view(), torch.linalg.inv(a.view()))


def test_invert_does_not_modify_input():
    a = well_conditioned(4)
    original = a.clone()

    matrix.invert(a)

    assert torch.equal(a.view(), original.view())


def test_determinant_of_fixture_computed_two_ways():
    a = Matrix.from_values(FIXTURE_4X4)
    decomposition = matrix.lu_decompose(a)

    expected = cofactor_determinant(FIXTURE_4X4)
    signed_diagonal = decomposition.parity * matrix.diagonal_product(decomposition.lu)

    assert matrix.determinant(a) == pytest.approx(expected)
    assert matrix.determinant(a) == pytest.approx(signed_diagonal)
    assert matrix.determinant(a) == pytest.approx(torch.linalg.det(a.view()).item())


@pytest.mark.parametrize("dim", [1, 2, 4, 6])
def test_determinant_matches_torch(dim: int):
    a = Matrix.from_values(torch.randn(dim, dim, dtype=torch.float64))

    assert matrix.determinant(a) == pytest.approx(torch.linalg.det(a.view()).item(), rel=1e-9)


def test_decomposition_requires_square_matrix():
    with pytest.raises(DimensionMismatch):
        matrix.lu_decompose(matrix.ones(2, 3))

    with pytest.raises(DimensionMismatch):
        matrix.invert(matrix.ones(3, 2))


def test_invert_reports_allocation_failure(monkeypatch):
    a = well_conditioned(3)

    def fail(*args, **kwargs):
        raise RuntimeError("can't allocate memory")

    with monkeypatch.context() as patch:
        patch.setattr(torch.linalg, "solve_triangular", fail)
        inversion = matrix.invert(a)

    assert inversion.status == InversionStatus.ALLOCATION_FAILURE
    assert inversion.matrix is None

    with monkeypatch.context() as patch:
        patch.setattr(matrix.torch, "empty", fail)
        inversion = matrix.invert(a)

    assert inversion.status == InversionStatus.ALLOCATION_FAILURE
    assert matrix.invert(a).ok
