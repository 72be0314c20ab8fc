"""Scalar multiplication, matrix multiplication, elementwise multiplication and
division by constants.

Atoms:

- `MultiplyAtom` - ``x @ y``: scalar broadcast when either side is 1x1,
  otherwise a matrix product
- `DotMultiplyAtom` - ``c * x``: elementwise product of a Constant with an
  expression of the same size

Only products in which at least one side is constant are DCP compliant. The
constructors in this module normalize operands into those canonical shapes:

- `multiply` routes self-multiplication of a scalar to `Square`
- `dot_multiply` moves the constant to the left, folds raw values into
  Constants and collapses to `multiply` when either side is a scalar
- `divide` multiplies by the elementwise reciprocal of a constant

Lowering uses the column-major vectorization identities::

    vec(A @ X) = kron(I_cols(X), A) @ vec(X)
    vec(X @ B) = kron(B.T, I_rows(X)) @ vec(X)
    vec(c * X) = diag(vec(c)) @ vec(X)

Example:
    >>> A = np.array([[1.0, 2.0], [3.0, 4.0]])
    >>> x = Variable("x", shape=(2,))
    >>> y = A @ x          # MultiplyAtom, size (2, 1)
    >>> z = [2.0, 3.0] * x  # DotMultiplyAtom, size (2, 1)
    >>> w = x / 4.0        # MultiplyAtom with Constant(0.25)
"""

import warnings
from typing import Tuple

import numpy as np
import scipy.sparse as sp

from dcpcore.symbolic.conic import ConicForm
from dcpcore.symbolic.dcp import DcpError, Monotonicity, Sign, Vexity

from .expr import Atom, Constant, DimensionError, Expr, to_expr
from .math import Square


def _is_constant(expr: Expr) -> bool:
    return expr.vexity() is Vexity.CONSTANT


def _as_constant(expr: Expr) -> Constant:
    """Fold a constant-valued expression into a Constant node."""
    return expr if isinstance(expr, Constant) else Constant(expr.evaluate())


class MultiplyAtom(Atom):
    """Scalar or matrix multiplication of two expressions.

    If either operand is 1x1 the result has the other operand's size (scalar
    broadcast). Otherwise the operands must be conformable for a matrix
    product.

    Attributes:
        left: Left-hand side expression
        right: Right-hand side expression

    Raises:
        DimensionError: If the operand sizes are incompatible
    """

    head = "*"

    def __init__(self, left, right):
        left, right = to_expr(left), to_expr(right)
        if left.size == (1, 1):
            size = right.size
        elif right.size == (1, 1):
            size = left.size
        elif left.size[1] == right.size[0]:
            size = (left.size[0], right.size[1])
        else:
            raise DimensionError(
                f"Cannot multiply two expressions of sizes {left.size} and {right.size}"
            )
        super().__init__(size, left, right)
        self.left = left
        self.right = right

    def _compute_sign(self) -> Sign:
        return self.left.sign() * self.right.sign()

    def monotonicity(self) -> Tuple[Monotonicity, ...]:
        return (
            self.right.sign() * Monotonicity.NONDECREASING,
            self.left.sign() * Monotonicity.NONDECREASING,
        )

    def curvature(self) -> Vexity:
        # The product has an indefinite Hessian unless one side is constant
        if not _is_constant(self.left) and not _is_constant(self.right):
            return Vexity.NOT_DCP
        return Vexity.CONSTANT

    def evaluate(self, values=None) -> np.ndarray:
        left = self.left.evaluate(values)
        right = self.right.evaluate(values)
        if self.left.size == (1, 1):
            return left.item() * right
        if self.right.size == (1, 1):
            return left * right.item()
        return left @ right

    def _lower(self, forms) -> ConicForm:
        left, right = self.left, self.right

        # scalar multiplication
        if left.size == (1, 1) or right.size == (1, 1):
            if _is_constant(left):
                const_child, expr_child = left, right
            elif _is_constant(right):
                const_child, expr_child = right, left
            else:
                raise DcpError("Multiplication of two non-constant expressions is not DCP compliant")
            form = forms.lower(expr_child)
            value = const_child.evaluate()
            if const_child.size == (1, 1):
                return form.scale(value.item())
            # The expression is the scalar: weight its single row by each entry of the constant
            weights = value.ravel(order="F")
            matrix = sp.csr_matrix(weights.reshape(-1, 1)) @ form.matrix
            return ConicForm(matrix.tocsr(), weights * form.offset[0])

        # left matrix multiplication
        if _is_constant(left):
            form = forms.lower(right)
            return form.premultiply(sp.kron(sp.eye(self.size[1]), left.evaluate()))

        # right matrix multiplication
        if _is_constant(right):
            form = forms.lower(left)
            return form.premultiply(sp.kron(right.evaluate().T, sp.eye(self.size[0])))

        raise DcpError("Multiplication of two non-constant expressions is not DCP compliant")

    def __repr__(self):
        return f"({self.left!r} @ {self.right!r})"


class DotMultiplyAtom(Atom):
    """Elementwise multiplication of a Constant with an expression of the same size.

    Attributes:
        const: Constant factor
        operand: Expression factor

    Raises:
        DimensionError: If the two sizes differ
    """

    head = ".*"

    def __init__(self, const: Constant, operand):
        operand = to_expr(operand)
        if not isinstance(const, Constant):
            raise TypeError(
                f"DotMultiplyAtom requires a Constant factor, got {type(const).__name__}"
            )
        if const.size != operand.size:
            raise DimensionError(
                f"Cannot dot multiply two expressions of sizes {const.size} and {operand.size}"
            )
        super().__init__(operand.size, const, operand)
        self.const = const
        self.operand = operand

    def _compute_sign(self) -> Sign:
        return self.const.sign() * self.operand.sign()

    def monotonicity(self) -> Tuple[Monotonicity, ...]:
        return (
            self.operand.sign() * Monotonicity.NONDECREASING,
            self.const.sign() * Monotonicity.NONDECREASING,
        )

    def curvature(self) -> Vexity:
        return Vexity.CONSTANT if _is_constant(self.operand) else Vexity.AFFINE

    def evaluate(self, values=None) -> np.ndarray:
        return self.const.value * self.operand.evaluate(values)

    def _lower(self, forms) -> ConicForm:
        weights = sp.diags(self.const.value.ravel(order="F"))
        return forms.lower(self.operand).premultiply(weights)

    def __repr__(self):
        return f"({self.const!r} * {self.operand!r})"


def multiply(x, y) -> Expr:
    """Scalar or matrix product ``x @ y``.

    Multiplying a scalar expression by itself yields `Square`, whose convex
    curvature the generic product rule cannot certify.

    Raises:
        DimensionError: If the operand sizes are incompatible
    """
    x, y = to_expr(x), to_expr(y)
    if x.size == (1, 1) and x == y:
        return Square(x)
    return MultiplyAtom(x, y)


def dot_multiply(x, y) -> Expr:
    """Elementwise product ``x * y``.

    Raises:
        DimensionError: If neither side is a scalar and the sizes differ
        DcpError: If neither side is constant and the operands are distinct
            non-scalar expressions
    """
    x, y = to_expr(x), to_expr(y)
    if x == y and not _is_constant(x):
        return Square(x)
    if x.size == (1, 1) or y.size == (1, 1):
        return multiply(x, y)
    if not _is_constant(x):
        if not _is_constant(y):
            raise DcpError(
                "Elementwise multiplication of two non-constant expressions is not DCP compliant"
            )
        x, y = y, x
    return DotMultiplyAtom(_as_constant(x), y)


def divide(x, c) -> Expr:
    """Divide an expression by a constant.

    A scalar divisor scales the expression; otherwise the division is
    elementwise. Zero entries in the divisor are not rejected: the reciprocal
    becomes infinite, a RuntimeWarning is issued, and the non-finite values
    propagate into evaluation and lowering.

    Raises:
        DcpError: If the divisor is not constant
    """
    x, c = to_expr(x), to_expr(c)
    if not _is_constant(c):
        raise DcpError("Division by a non-constant expression is not DCP compliant")
    with np.errstate(divide="ignore"):
        reciprocal = 1.0 / c.evaluate()
    if not np.all(np.isfinite(reciprocal)):
        warnings.warn(
            "Dividing by a constant with zero entries produces non-finite values",
            RuntimeWarning,
            stacklevel=2,
        )
    if c.size == (1, 1):
        return multiply(x, Constant(reciprocal))
    return dot_multiply(Constant(reciprocal), x)
