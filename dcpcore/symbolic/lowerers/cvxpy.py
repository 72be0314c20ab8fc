from typing import Any, Callable, Dict, Type

import cvxpy as cp

from dcpcore.symbolic.dcp import Sign
from dcpcore.symbolic.expr import (
    Constant,
    DotMultiplyAtom,
    Expr,
    MultiplyAtom,
    Square,
    Variable,
)

_CVXPY_VISITORS: Dict[Type[Expr], Callable] = {}


def visitor(expr_cls: Type[Expr]):
    def register(fn: Callable[[Any, Expr], cp.Expression]):
        _CVXPY_VISITORS[expr_cls] = fn
        return fn

    return register


def dispatch(lowerer: Any, expr: Expr):
    fn = _CVXPY_VISITORS.get(type(expr))
    if fn is None:
        raise NotImplementedError(
            f"{lowerer.__class__.__name__!r} has no visitor for {type(expr).__name__}"
        )
    return fn(lowerer, expr)


class CvxpyLowerer:
    """
    Lowers expression graphs to CVXPy expressions.

    Variables found in ``variable_map`` (keyed by name) are used as given. Any
    other Variable gets a fresh ``cp.Variable`` of the same size and declared
    sign, which is registered in the map so later references reuse it.
    """

    def __init__(self, variable_map: Dict[str, cp.Expression] = None):
        """
        Initialize the CVXPy lowerer.

        Args:
            variable_map: Dictionary mapping variable names to CVXPy expressions.
        """
        self.variable_map = variable_map if variable_map is not None else {}

    def lower(self, expr: Expr) -> cp.Expression:
        """Lower an expression to a CVXPy expression."""
        return dispatch(self, expr)

    def register_variable(self, name: str, cvx_expr: cp.Expression):
        """Register a CVXPy variable/expression for use in lowering."""
        self.variable_map[name] = cvx_expr

    @visitor(Constant)
    def visit_constant(self, node: Constant) -> cp.Expression:
        return cp.Constant(node.value)

    @visitor(Variable)
    def visit_variable(self, node: Variable) -> cp.Expression:
        if node.name not in self.variable_map:
            self.register_variable(
                node.name,
                cp.Variable(
                    node.size,
                    name=node.name,
                    nonneg=node.known_sign is Sign.POSITIVE,
                    nonpos=node.known_sign is Sign.NEGATIVE,
                ),
            )
        return self.variable_map[node.name]

    @visitor(MultiplyAtom)
    def visit_multiply(self, node: MultiplyAtom) -> cp.Expression:
        left = self.lower(node.left)
        right = self.lower(node.right)
        # CVXPy broadcasts 1x1 operands in elementwise products
        if node.left.size == (1, 1) or node.right.size == (1, 1):
            return cp.multiply(left, right)
        return left @ right

    @visitor(DotMultiplyAtom)
    def visit_dot_multiply(self, node: DotMultiplyAtom) -> cp.Expression:
        const = self.lower(node.const)
        operand = self.lower(node.operand)
        return cp.multiply(const, operand)

    @visitor(Square)
    def visit_square(self, node: Square) -> cp.Expression:
        operand = self.lower(node.x)
        return cp.square(operand)


def lower_to_cvxpy(expr: Expr, variable_map: Dict[str, cp.Expression] = None) -> cp.Expression:
    """
    Convenience function to lower a single expression to CVXPy.

    Args:
        expr: Expression to lower
        variable_map: Dictionary mapping variable names to CVXPy expressions

    Returns:
        CVXPy expression

    Example:
        >>> import cvxpy as cp
        >>> x_var = cp.Variable((3, 1), name="x")
        >>> x = Variable("x", shape=(3,))
        >>> cvx_expr = lower_to_cvxpy(2 * x, {"x": x_var})
    """
    lowerer = CvxpyLowerer(variable_map)
    return lowerer.lower(expr)
