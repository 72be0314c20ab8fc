# Core symbolic expressions - flat namespace for most common functions
from dcpcore.config import LoweringConfig
from dcpcore.symbolic.conic import ConicConstraint, ConicForm
from dcpcore.symbolic.dcp import DcpError, Monotonicity, Sign, Vexity
from dcpcore.symbolic.expr import (
    Constant,
    DimensionError,
    DotMultiplyAtom,
    Expr,
    MultiplyAtom,
    Square,
    Variable,
    divide,
    dot_multiply,
    multiply,
    to_expr,
    traverse,
)
from dcpcore.symbolic.lower import (
    LoweredExpressions,
    UniqueConicForms,
    conic_form,
    lower_expressions,
)
from dcpcore.symbolic.unified import StackedUnknowns

__all__ = [
    # Core base classes
    "Expr",
    "Constant",
    "Variable",
    "to_expr",
    "traverse",
    # Multiply/divide family
    "MultiplyAtom",
    "DotMultiplyAtom",
    "Square",
    "multiply",
    "dot_multiply",
    "divide",
    # DCP rule engine
    "Sign",
    "Monotonicity",
    "Vexity",
    "DcpError",
    "DimensionError",
    # Lowering
    "ConicForm",
    "ConicConstraint",
    "StackedUnknowns",
    "UniqueConicForms",
    "LoweredExpressions",
    "conic_form",
    "lower_expressions",
    # Configuration
    "LoweringConfig",
]
