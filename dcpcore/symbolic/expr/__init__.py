# Core base classes and leaves
from .expr import (
    Atom,
    Constant,
    DimensionError,
    Expr,
    Variable,
    collect_variables,
    normalize_size,
    post_order,
    to_expr,
    traverse,
)

# Mathematical functions
from .math import Square

# Multiplication and division
from .multiply import DotMultiplyAtom, MultiplyAtom, divide, dot_multiply, multiply

__all__ = [
    # Core base classes and leaves
    "Expr",
    "Atom",
    "Constant",
    "Variable",
    "DimensionError",
    "to_expr",
    "traverse",
    "collect_variables",
    "normalize_size",
    "post_order",
    # Multiplication and division
    "MultiplyAtom",
    "DotMultiplyAtom",
    "multiply",
    "dot_multiply",
    "divide",
    # Mathematical functions
    "Square",
]
