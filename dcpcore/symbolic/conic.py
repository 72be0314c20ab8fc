"""Sparse affine operators produced by lowering.

A `ConicForm` expresses the column-major vectorized value of an expression as
an affine function of the stacked vector of unknowns::

    vec(value) = matrix @ x + offset

The column count of `matrix` is the number of unknowns registered when the form
was built. Auxiliary variables may be appended to the stacked vector later in
the same compile pass, so forms are zero-padded with `with_columns` before they
are combined or handed off.
"""

from dataclasses import dataclass

import numpy as np
import scipy.sparse as sp


@dataclass
class ConicForm:
    """Affine map from the stacked unknowns to an expression's vectorized value.

    Attributes:
        matrix: CSR matrix of shape (vectorized_size, n_unknowns)
        offset: Dense vector of length vectorized_size
    """

    matrix: sp.csr_matrix
    offset: np.ndarray

    @classmethod
    def constant(cls, value: np.ndarray, n_unknowns: int) -> "ConicForm":
        vec = np.asarray(value, dtype=float).ravel(order="F")
        return cls(sp.csr_matrix((vec.size, n_unknowns)), vec)

    @property
    def shape(self):
        """(output dimension, input dimension) of the operator."""
        return self.matrix.shape

    def with_columns(self, n: int) -> "ConicForm":
        """Zero-pad the operator to act on a stacked vector of length ``n``."""
        rows, cols = self.matrix.shape
        if n == cols:
            return self
        if n < cols:
            raise ValueError(f"Cannot shrink conic form from {cols} to {n} columns")
        padding = sp.csr_matrix((rows, n - cols))
        return ConicForm(sp.hstack([self.matrix, padding], format="csr"), self.offset)

    def scale(self, factor: float) -> "ConicForm":
        return ConicForm((self.matrix * factor).tocsr(), self.offset * factor)

    def premultiply(self, operator) -> "ConicForm":
        """Apply a linear map to the output of this form: ``operator @ form``."""
        operator = sp.csr_matrix(operator)
        return ConicForm((operator @ self.matrix).tocsr(), operator @ self.offset)

    def apply(self, x: np.ndarray) -> np.ndarray:
        """Evaluate the affine map at a concrete stacked vector."""
        x = np.asarray(x, dtype=float).ravel()
        cols = self.matrix.shape[1]
        if x.size < cols:
            raise ValueError(f"Stacked vector has {x.size} entries, conic form needs {cols}")
        return self.matrix @ x[:cols] + self.offset

    def is_finite(self) -> bool:
        return bool(np.all(np.isfinite(self.matrix.data)) and np.all(np.isfinite(self.offset)))


@dataclass
class ConicConstraint:
    """A cone membership constraint ``form(x) in cone`` emitted during lowering.

    For ``cone == "SOC"`` the first row of the form bounds the Euclidean norm of
    the remaining rows: ``norm(form[1:]) <= form[0]``.

    Attributes:
        cone: Cone name
        form: Conic form whose value must lie in the cone
    """

    cone: str
    form: ConicForm
