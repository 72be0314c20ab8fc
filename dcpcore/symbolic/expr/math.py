from typing import Tuple

import numpy as np
import scipy.sparse as sp

from dcpcore.symbolic.conic import ConicConstraint, ConicForm
from dcpcore.symbolic.dcp import Monotonicity, Sign, Vexity

from .expr import Atom, to_expr


class Square(Atom):
    """Elementwise square x^2.

    Self-multiplication (``x @ x`` for a scalar, ``x * x`` elementwise) builds
    this atom. Lowering introduces an epigraph variable ``t`` of the same size
    and, per entry, the second-order cone constraint

        ||(2 x_i, t_i - 1)||_2 <= t_i + 1

    which holds exactly when x_i^2 <= t_i.
    """

    head = "square"

    def __init__(self, x):
        x = to_expr(x)
        super().__init__(x.size, x)
        self.x = x

    def _compute_sign(self) -> Sign:
        return Sign.ZERO if self.x.sign() is Sign.ZERO else Sign.POSITIVE

    def monotonicity(self) -> Tuple[Monotonicity, ...]:
        return (self.x.sign() * Monotonicity.NONDECREASING,)

    def curvature(self) -> Vexity:
        return Vexity.CONVEX

    def evaluate(self, values=None) -> np.ndarray:
        return self.x.evaluate(values) ** 2

    def _lower(self, forms) -> ConicForm:
        if self.x.vexity() is Vexity.CONSTANT:
            return ConicForm.constant(self.evaluate(), forms.unknowns.size)

        x = forms.lower(self.x)
        t = forms.lower(forms.new_auxiliary(self.x.size))
        n = forms.unknowns.size
        x, t = x.with_columns(n), t.with_columns(n)
        for i in range(self.vectorized_size):
            t_row = t.matrix[i]
            x_row = x.matrix[i]
            matrix = sp.vstack([t_row, 2 * x_row, t_row], format="csr")
            offset = np.array([t.offset[i] + 1.0, 2 * x.offset[i], t.offset[i] - 1.0])
            forms.add_constraint(ConicConstraint("SOC", ConicForm(matrix, offset)))
        return t

    def __repr__(self):
        return f"({self.x!r})^2"
