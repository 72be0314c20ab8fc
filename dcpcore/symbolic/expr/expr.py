from typing import TYPE_CHECKING, Callable, List, Mapping, Optional, Tuple, Union

import numpy as np
import scipy.sparse as sp

from dcpcore.symbolic.conic import ConicForm
from dcpcore.symbolic.dcp import DcpError, Monotonicity, Sign, Vexity
from dcpcore.symbolic.hashing import constant_hash, structural_hash, variable_hash

if TYPE_CHECKING:
    from dcpcore.symbolic.lower import UniqueConicForms


class DimensionError(ValueError):
    """Raised when operand sizes are incompatible for the requested operation."""


def normalize_size(shape: Union[int, Tuple[int, ...]]) -> Tuple[int, int]:
    """Normalize a shape to a (rows, cols) pair.

    Scalars become (1, 1) and vectors become columns, so ``()`` maps to (1, 1)
    and ``(n,)`` maps to (n, 1).

    Raises:
        DimensionError: If the shape has more than two dimensions
    """
    if isinstance(shape, (int, np.integer)):
        shape = (int(shape),)
    shape = tuple(int(d) for d in shape)
    if len(shape) == 0:
        return (1, 1)
    if len(shape) == 1:
        return (shape[0], 1)
    if len(shape) == 2:
        return shape
    raise DimensionError(f"Expressions are at most two-dimensional, got shape {shape}")


def as_matrix(value) -> np.ndarray:
    """Coerce numeric data to a 2-D float array using the (rows, cols) convention."""
    value = np.asarray(value, dtype=float)
    return value.reshape(normalize_size(value.shape), order="F")


class Expr:
    """Base class for nodes of the expression graph.

    An Expr is an immutable value object. Atoms hold references to their
    children, and the same child may appear under several parents, so a model
    is a DAG rather than a tree. Each node reports:

    - `size`: (rows, cols) of the value it represents, fixed at construction
    - `id_hash`: structural identity, fixed at construction
    - `sign()`, `monotonicity()`, `curvature()`: the atom's own DCP rules
    - `vexity()`: curvature composed over the whole subgraph
    - `evaluate()`: numeric value for concrete variable assignments
    - `lower()`: the conic form of the node, memoized per compile pass

    Arithmetic operators build atoms:

    - ``x @ y``: scalar or matrix multiplication (`multiply`)
    - ``x * y``: elementwise multiplication (`dot_multiply`)
    - ``x / c``: division by a constant (`divide`)
    - ``-x``: multiplication by -1

    Equality and hashing use the structural identity, so nodes can be used as
    dictionary keys.

    Attributes:
        __array_priority__: Priority for operations with numpy arrays (set to 1000)
        head: Operator tag of the node type
    """

    # Give Expr objects higher priority than numpy arrays in operations
    __array_priority__ = 1000

    head: str = "expr"

    def __init__(self, size: Tuple[int, int], id_hash: str):
        self._size = size
        self._id_hash = id_hash
        self._sign: Optional[Sign] = None
        self._vexity: Optional[Vexity] = None

    @property
    def size(self) -> Tuple[int, int]:
        return self._size

    @property
    def vectorized_size(self) -> int:
        return self._size[0] * self._size[1]

    @property
    def id_hash(self) -> str:
        return self._id_hash

    def __eq__(self, other):
        if not isinstance(other, Expr):
            return NotImplemented
        return self._id_hash == other._id_hash

    def __hash__(self):
        return hash(self._id_hash)

    def __mul__(self, other):
        from .multiply import dot_multiply

        return dot_multiply(self, other)

    def __rmul__(self, other):
        from .multiply import dot_multiply

        return dot_multiply(to_expr(other), self)

    def __matmul__(self, other):
        from .multiply import multiply

        return multiply(self, other)

    def __rmatmul__(self, other):
        from .multiply import multiply

        return multiply(to_expr(other), self)

    def __truediv__(self, other):
        from .multiply import divide

        return divide(self, other)

    def __rtruediv__(self, other):
        # e.g. 10 / x
        raise DcpError("Division by a non-constant expression is not DCP compliant")

    def __neg__(self):
        from .multiply import multiply

        return multiply(Constant(-1.0), self)

    def children(self) -> List["Expr"]:
        """Return the child expressions of this node.

        Returns:
            list: List of child Expr objects. Empty list for leaf nodes.
        """
        return []

    def sign(self) -> Sign:
        """Sign of every entry of this expression's value, memoized on the node."""
        if self._sign is None:
            for node in post_order(self, skip=lambda n: n._sign is not None):
                node._sign = node._compute_sign()
        return self._sign

    def _compute_sign(self) -> Sign:
        raise NotImplementedError(f"sign() not implemented for {self.__class__.__name__}")

    def monotonicity(self) -> Tuple[Monotonicity, ...]:
        """Monotonicity of this atom in each of its children, in order."""
        return ()

    def curvature(self) -> Vexity:
        """Intrinsic curvature of this atom, before composition with its children."""
        raise NotImplementedError(f"curvature() not implemented for {self.__class__.__name__}")

    def vexity(self) -> Vexity:
        """Curvature of the expression rooted at this node under the DCP composition rule.

        The atom's intrinsic curvature is joined with each child's vexity scaled
        by the atom's monotonicity in that child. An atom whose children are all
        constant is constant. The result is memoized on every node of the
        subgraph, which is walked bottom-up without recursion.

        Returns:
            Vexity: Composed curvature; NOT_DCP if any composition step is unsound
        """
        if self._vexity is None:
            for node in post_order(self, skip=lambda n: n._vexity is not None):
                node._vexity = node._compose_vexity()
        return self._vexity

    def _compose_vexity(self) -> Vexity:
        # children are already memoized when this runs
        children = self.children()
        if children and all(child._vexity is Vexity.CONSTANT for child in children):
            return Vexity.CONSTANT
        vexity = self.curvature()
        for monotonicity, child in zip(self.monotonicity(), children):
            vexity = vexity + monotonicity * child._vexity
        return vexity

    def is_dcp(self) -> bool:
        return self.vexity() is not Vexity.NOT_DCP

    def evaluate(self, values: Optional[Mapping["Variable", np.ndarray]] = None) -> np.ndarray:
        """Compute the numeric value of this expression.

        Args:
            values: Mapping from each Variable in the graph to its concrete value

        Returns:
            np.ndarray: 2-D array of shape `size`
        """
        raise NotImplementedError(f"evaluate() not implemented for {self.__class__.__name__}")

    def lower(self, forms: "UniqueConicForms") -> ConicForm:
        """Return the conic form of this node, computing it at most once per cache."""
        return forms.lower(self)

    def _lower(self, forms: "UniqueConicForms") -> ConicForm:
        raise NotImplementedError(f"Lowering not implemented for {self.__class__.__name__}")

    def pretty(self, indent=0):
        """Generate a pretty-printed string representation of the expression graph.

        Shared subexpressions are printed under every parent that references them.

        Args:
            indent: Current indentation level (default: 0)

        Returns:
            str: Multi-line string representation of the expression

        Example:
            >>> expr = 2 * (A @ x)
            >>> print(expr.pretty())
            MultiplyAtom
              Constant
              MultiplyAtom
                Constant
                Variable
        """
        pad = "  " * indent
        lines = [f"{pad}{self.__class__.__name__}"]
        for child in self.children():
            lines.append(child.pretty(indent + 1))
        return "\n".join(lines)


class Atom(Expr):
    """Internal node whose identity is derived from its tag and its children."""

    def __init__(self, size: Tuple[int, int], *args: Expr):
        super().__init__(size, structural_hash(self.head, (arg.id_hash for arg in args)))
        self.args = args

    def children(self) -> List[Expr]:
        return list(self.args)


class Constant(Expr):
    """Constant value expression.

    Wraps fixed numeric data as a 2-D float array. Scalars are stored as (1, 1)
    and 1-D data as a column. The sign of a constant is read off its data.

    Attributes:
        value: The 2-D numpy array held by the constant

    Example:
        >>> c1 = Constant(5.0)        # size (1, 1)
        >>> c2 = Constant([1, 2, 3])  # size (3, 1)
        >>> c3 = to_expr(10)          # Also creates a Constant
    """

    head = "constant"

    def __init__(self, value):
        value = as_matrix(value)
        super().__init__(value.shape, constant_hash(value))
        self.value = value
        self._sign = Sign.of(value)

    def curvature(self) -> Vexity:
        return Vexity.CONSTANT

    def evaluate(self, values=None) -> np.ndarray:
        return self.value.copy()

    def _lower(self, forms):
        return ConicForm.constant(self.value, forms.unknowns.size)

    def __repr__(self):
        if self.value.size == 1:
            return f"Const({self.value.item()!r})"
        return f"Const({self.value.tolist()!r})"


class Variable(Expr):
    """Optimization unknown.

    Every Variable instance is a distinct unknown, even when two share a name.
    Its entries occupy a contiguous range of the stacked unknowns vector, which
    is assigned by the `StackedUnknowns` layout of the compile pass.

    Attributes:
        name (str): Name identifier for the variable
        known_sign (Sign): Sign the variable is declared to have

    Example:
        >>> x = Variable("x", shape=(3,))           # size (3, 1)
        >>> W = Variable("W", shape=(2, 3))
        >>> t = Variable("t", sign=Sign.POSITIVE)   # nonnegative scalar
    """

    head = "variable"

    def __init__(self, name: str, shape: Union[int, Tuple[int, ...]] = (), sign: Sign = Sign.NOSIGN):
        """Initialize a Variable node.

        Args:
            name (str): Name identifier for the variable
            shape (tuple): Shape of the variable, normalized to (rows, cols)
            sign (Sign): Declared sign of every entry (default: NOSIGN)
        """
        super().__init__(normalize_size(shape), variable_hash())
        self.name = name
        self.known_sign = Sign(sign)
        self._sign = self.known_sign

    def curvature(self) -> Vexity:
        return Vexity.AFFINE

    def coerce_value(self, value) -> np.ndarray:
        """Coerce a concrete value to this variable's size.

        Raises:
            DimensionError: If the value does not have as many entries as the variable
        """
        value = np.asarray(value, dtype=float)
        if value.size != self.vectorized_size:
            raise DimensionError(
                f"Value for variable {self.name!r} has {value.size} entries, expected size {self.size}"
            )
        return value.reshape(self.size, order="F")

    def evaluate(self, values=None) -> np.ndarray:
        if values is None or self not in values:
            raise ValueError(f"No value provided for variable {self.name!r}")
        return self.coerce_value(values[self])

    def _lower(self, forms):
        sl = forms.unknowns.register(self)
        n = self.vectorized_size
        matrix = sp.csr_matrix(
            (np.ones(n), (np.arange(n), np.arange(sl.start, sl.stop))),
            shape=(n, forms.unknowns.size),
        )
        return ConicForm(matrix, np.zeros(n))

    def __repr__(self):
        return f"Variable('{self.name}', shape={self.size})"


def to_expr(x) -> Expr:
    """Convert a value to an Expr if it is not already one.

    Wraps numeric values and arrays as Constant expressions, leaving Expr
    instances unchanged.

    Example:
        >>> to_expr(5.0)  # Returns Constant(5.0)
        >>> to_expr(var)  # Returns var unchanged if var is an Expr
    """
    return x if isinstance(x, Expr) else Constant(x)


def traverse(expr: Expr, visit: Callable[[Expr], None]):
    """Depth-first traversal of an expression graph.

    Applies the visit function to the current node, then recursively visits
    all children. Shared subexpressions are visited once per reference.

    Example:
        >>> def print_nodes(node):
        ...     print(node.__class__.__name__)
        >>> traverse(my_expr, print_nodes)
    """
    visit(expr)
    for child in expr.children():
        traverse(child, visit)


def post_order(expr: Expr, skip: Optional[Callable[[Expr], bool]] = None) -> List[Expr]:
    """Distinct nodes reachable from ``expr``, every child before its parents.

    Uses an explicit stack, so graphs deeper than the interpreter's recursion
    limit can be walked.

    Args:
        expr: Root of the graph
        skip: Predicate for nodes to leave out together with their subgraphs,
            e.g. nodes whose result is already memoized

    Returns:
        list: Nodes in bottom-up order, ending with ``expr`` unless it is skipped
    """
    order = []
    visited = set()
    stack = [(expr, False)]
    while stack:
        node, expanded = stack.pop()
        if expanded:
            order.append(node)
            continue
        if node.id_hash in visited:
            continue
        visited.add(node.id_hash)
        if skip is not None and skip(node):
            continue
        stack.append((node, True))
        stack.extend((child, False) for child in reversed(node.children()))
    return order


def collect_variables(*exprs: Expr) -> List[Variable]:
    """Return the distinct Variables reachable from the given expressions, in first-seen order."""
    visited = set()
    found = []
    stack = list(reversed(exprs))
    while stack:
        node = stack.pop()
        if node.id_hash in visited:
            continue
        visited.add(node.id_hash)
        if isinstance(node, Variable):
            found.append(node)
        stack.extend(reversed(node.children()))
    return found
