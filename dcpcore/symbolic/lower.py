"""Lowering of expression graphs to conic form.

This module provides the compile pass that converts expression nodes into
sparse affine operators over the stacked vector of unknowns (see
`dcpcore.symbolic.conic.ConicForm`).

Architecture:
    Every atom implements `_lower(forms)`, which reads its children's forms
    from the cache and combines them. `UniqueConicForms.lower()` walks the
    uncached part of a graph in post-order with an explicit stack and memoizes
    each form under its structural identity. A subexpression shared by
    several parents (a diamond in the DAG) is lowered exactly once, so the
    cost of a pass is linear in the number of distinct nodes. Graph depth is
    not bounded by the recursion limit.

    Lowering Flow:

    1. Expressions are built and their sizes checked at construction
    2. The DCP rule engine certifies the top-level curvature (`check_dcp`)
    3. The graph is walked bottom-up, filling the cache
    4. Forms are padded to the final number of unknowns and handed off,
       together with any cone constraints emitted by non-affine atoms

    The cache lives for one pass; create a new one for every compilation.

Example:
    Lowering a matrix product::

        A = np.array([[1.0, 2.0], [3.0, 4.0]])
        x = Variable("x", shape=(2,))
        form = conic_form(A @ x)
        form.matrix.toarray()  # == A

    Lowering several expressions in one pass::

        lowered = lower_expressions([A @ x, 2 * x], variables=[x])
        lowered.forms[0].shape  # (2, 2)
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from dcpcore.config import LoweringConfig
from dcpcore.symbolic.conic import ConicConstraint, ConicForm
from dcpcore.symbolic.dcp import DcpError, Vexity
from dcpcore.symbolic.expr import Expr, Variable, post_order
from dcpcore.symbolic.unified import StackedUnknowns


class UniqueConicForms:
    """Memoizing cache of conic forms for one compile pass.

    Maps structural identity to the conic form computed for it. Entries are
    never evicted. The cache also owns the pass's stacked-unknowns layout and
    collects the cone constraints emitted by non-affine atoms.

    Attributes:
        unknowns: Layout of the stacked unknowns vector
        config: Configuration of the pass
        constraints: Cone constraints emitted so far
        computations: Number of nodes actually lowered
        hits: Number of times an already lowered subgraph was reused
    """

    def __init__(
        self,
        unknowns: Optional[StackedUnknowns] = None,
        config: Optional[LoweringConfig] = None,
    ):
        self.unknowns = unknowns if unknowns is not None else StackedUnknowns()
        self.config = config if config is not None else LoweringConfig()
        self.constraints: List[ConicConstraint] = []
        self.computations = 0
        self.hits = 0
        self._forms: Dict[str, ConicForm] = {}
        self._n_auxiliary = 0
        self._lowering = False

    def __contains__(self, expr: Expr) -> bool:
        return expr.id_hash in self._forms

    def __len__(self) -> int:
        return len(self._forms)

    def get(self, expr: Expr) -> ConicForm:
        return self._forms[expr.id_hash]

    def lower(self, expr: Expr) -> ConicForm:
        """Return the conic form of ``expr``, computing it only on the first request.

        Uncached subgraphs are lowered bottom-up from an explicit post-order, so
        when an atom's `_lower` runs, the forms of its children are already in
        the cache and graph depth is not bounded by the recursion limit.
        """
        form = self._forms.get(expr.id_hash)
        if form is not None:
            if not self._lowering:
                self.hits += 1
            return form
        if self._lowering:
            # auxiliary variables created by an atom mid-pass
            return self._compute(expr)
        self._lowering = True
        try:
            for node in post_order(expr, skip=self._reuse):
                self._compute(node)
        finally:
            self._lowering = False
        return self._forms[expr.id_hash]

    def _reuse(self, expr: Expr) -> bool:
        if expr.id_hash in self._forms:
            self.hits += 1
            return True
        return False

    def _compute(self, expr: Expr) -> ConicForm:
        form = expr._lower(self)
        if self.config.reject_nonfinite and not form.is_finite():
            raise ValueError(f"Conic form of {expr!r} contains non-finite values")
        self._forms[expr.id_hash] = form
        self.computations += 1
        return form

    def new_auxiliary(self, shape) -> Variable:
        """Create an auxiliary variable and append it to the stacked unknowns."""
        variable = Variable(f"_aux{self._n_auxiliary}", shape)
        self._n_auxiliary += 1
        self.unknowns.register(variable)
        return variable

    def add_constraint(self, constraint: ConicConstraint):
        self.constraints.append(constraint)


def conic_form(expr: Expr, forms: Optional[UniqueConicForms] = None) -> ConicForm:
    """Lower one expression and pad it to the full stacked unknowns vector.

    Args:
        expr: Expression to lower
        forms: Cache of the current pass; a fresh one is created if omitted

    Returns:
        ConicForm: Operator of shape (expr.vectorized_size, forms.unknowns.size)

    Raises:
        DcpError: If the expression is not DCP compliant
    """
    forms = forms if forms is not None else UniqueConicForms()
    if forms.config.check_dcp and expr.vexity() is Vexity.NOT_DCP:
        raise DcpError(f"Expression {expr!r} is not DCP compliant")
    return forms.lower(expr).with_columns(forms.unknowns.size)


@dataclass
class LoweredExpressions:
    """Result of one compile pass over a collection of expressions.

    Attributes:
        forms: Conic form of each input expression, in order, all padded to
            the final number of unknowns
        constraints: Cone constraints emitted while lowering
        unknowns: Final layout of the stacked unknowns vector
        computations: Number of distinct nodes lowered
        hits: Number of already lowered subgraphs reused
    """

    forms: List[ConicForm] = field(default_factory=list)
    constraints: List[ConicConstraint] = field(default_factory=list)
    unknowns: StackedUnknowns = field(default_factory=StackedUnknowns)
    computations: int = 0
    hits: int = 0


def lower_expressions(
    exprs: Sequence[Expr],
    variables: Optional[Iterable[Variable]] = None,
    config: Optional[LoweringConfig] = None,
) -> LoweredExpressions:
    """Lower several expressions in one pass sharing a single cache.

    Args:
        exprs: Expressions to lower
        variables: Variables to place first in the stacked unknowns, in this
            order. Variables not listed are appended as they are reached.
        config: Configuration of the pass

    Returns:
        LoweredExpressions: Forms padded to the final unknown count, plus the
            emitted constraints and the layout
    """
    forms = UniqueConicForms(StackedUnknowns(variables), config)
    lowered = [conic_form(expr, forms) for expr in exprs]
    n = forms.unknowns.size
    result = LoweredExpressions(
        forms=[form.with_columns(n) for form in lowered],
        constraints=[
            ConicConstraint(c.cone, c.form.with_columns(n)) for c in forms.constraints
        ],
        unknowns=forms.unknowns,
        computations=forms.computations,
        hits=forms.hits,
    )
    if forms.config.printing:
        from dcpcore.io import print_lowering_summary

        print_lowering_summary(result)
    return result
