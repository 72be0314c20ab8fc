"""Tests for lowering expressions to conic form.

This module tests the lowering engine and its memoizing cache:
- Conic forms of leaves
- Kronecker/diagonal construction for the multiplication atoms
- Agreement between lowered operators and direct evaluation
- Single lowering of shared subexpressions
- DCP gating and defensive DCP faults
- Epigraph lowering of Square
- Configuration, padding, and the lowering summary
"""

import numpy as np
import pytest

from dcpcore.config import LoweringConfig
from dcpcore.symbolic.conic import ConicForm
from dcpcore.symbolic.dcp import DcpError, Sign, Vexity
from dcpcore.symbolic.expr import Constant, MultiplyAtom, Variable, dot_multiply
from dcpcore.symbolic.lower import UniqueConicForms, conic_form, lower_expressions
from dcpcore.symbolic.unified import StackedUnknowns


def lowered_value(form: ConicForm, unknowns: StackedUnknowns, values, size):
    """Evaluate a conic form at concrete values and reshape to the node's size."""
    return form.apply(unknowns.stack(values)).reshape(size, order="F")


# =============================================================================
# Leaves
# =============================================================================


def test_variable_lowers_to_identity_rows():
    x = Variable("x", shape=(3,))
    forms = UniqueConicForms()
    form = conic_form(x, forms)
    assert form.shape == (3, 3)
    np.testing.assert_array_equal(form.matrix.toarray(), np.eye(3))
    np.testing.assert_array_equal(form.offset, np.zeros(3))
    assert forms.unknowns.slice_of(x) == slice(0, 3)


def test_second_variable_occupies_the_next_range():
    x = Variable("x", shape=(2,))
    Y = Variable("Y", shape=(2, 2))
    forms = UniqueConicForms(StackedUnknowns([x, Y]))
    form = conic_form(Y, forms)
    assert form.shape == (4, 6)
    np.testing.assert_array_equal(form.matrix.toarray()[:, 2:], np.eye(4))
    np.testing.assert_array_equal(form.matrix.toarray()[:, :2], 0.0)


def test_constant_lowers_to_offset_in_column_major_order():
    C = np.array([[1.0, 2.0], [3.0, 4.0]])
    form = conic_form(Constant(C))
    assert form.matrix.nnz == 0
    np.testing.assert_array_equal(form.offset, [1.0, 3.0, 2.0, 4.0])


# =============================================================================
# Multiplication Atoms
# =============================================================================


def test_left_matrix_multiply_is_kron_of_identity_and_constant():
    A = np.array([[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]])
    X = Variable("X", shape=(2, 4))
    form = conic_form(Constant(A) @ X)
    assert form.shape == (12, 8)
    np.testing.assert_allclose(form.matrix.toarray(), np.kron(np.eye(4), A))


def test_right_matrix_multiply_is_kron_of_transpose_and_identity():
    B = np.array([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]])
    X = Variable("X", shape=(3, 2))
    form = conic_form(X @ Constant(B))
    assert form.shape == (9, 6)
    np.testing.assert_allclose(form.matrix.toarray(), np.kron(B.T, np.eye(3)))


def test_lowered_matrix_products_match_evaluation():
    rng = np.random.default_rng(0)
    A = rng.normal(size=(3, 2))
    B = rng.normal(size=(4, 2))
    X = Variable("X", shape=(2, 4))
    value = rng.normal(size=(2, 4))

    for expr in (Constant(A) @ X, X @ Constant(B), Constant(A) @ X @ Constant(B)):
        forms = UniqueConicForms()
        form = conic_form(expr, forms)
        np.testing.assert_allclose(
            lowered_value(form, forms.unknowns, {X: value}, expr.size),
            expr.evaluate({X: value}),
        )


def test_scalar_constant_scales_the_operator():
    X = Variable("X", shape=(2, 2))
    form = conic_form(Constant(3.0) @ X)
    np.testing.assert_allclose(form.matrix.toarray(), 3.0 * np.eye(4))
    form = conic_form(X @ Constant(-1.0))
    np.testing.assert_allclose(form.matrix.toarray(), -np.eye(4))


def test_constant_matrix_times_scalar_expression_broadcasts_the_row():
    s = Variable("s")
    C = np.array([[1.0, 2.0], [3.0, 4.0]])
    forms = UniqueConicForms()
    form = conic_form(Constant(C) @ (2.0 * s), forms)
    assert form.shape == (4, 1)
    np.testing.assert_allclose(form.matrix.toarray().ravel(), 2.0 * C.ravel(order="F"))
    np.testing.assert_allclose(
        lowered_value(form, forms.unknowns, {s: 1.5}, (2, 2)),
        3.0 * C,
    )


def test_constant_offset_is_carried_through_products():
    x = Variable("x", shape=(2,))
    expr = Constant(np.array([[1.0, 1.0]])) @ Constant([2.0, 3.0])
    form = conic_form(expr)
    np.testing.assert_allclose(form.offset, [5.0])

    broadcast = Constant([1.0, 2.0]) @ (Constant(np.array([[1.0, 0.0]])) @ x)
    forms = UniqueConicForms()
    form = conic_form(broadcast, forms)
    np.testing.assert_allclose(
        lowered_value(form, forms.unknowns, {x: [4.0, 5.0]}, (2, 1)),
        [[4.0], [8.0]],
    )


def test_dot_multiply_is_a_diagonal_operator():
    X = Variable("X", shape=(2, 2))
    C = np.array([[1.0, 2.0], [3.0, 4.0]])
    form = conic_form(Constant(C) * X)
    np.testing.assert_allclose(form.matrix.toarray(), np.diag(C.ravel(order="F")))


def test_diagonal_scaling_scenario():
    c = np.array([[2.0, 0.0], [0.0, 3.0]])
    X = Variable("X", shape=(2,))
    values = {X: [1.0, 1.0]}

    for expr in (Constant(c) @ X, dot_multiply([2.0, 3.0], X)):
        forms = UniqueConicForms()
        form = conic_form(expr, forms)
        base = forms.lower(X)
        np.testing.assert_allclose(form.matrix.toarray(), np.diag([2.0, 3.0]) @ base.matrix.toarray())
        np.testing.assert_allclose(expr.evaluate(values), [[2.0], [3.0]])
        np.testing.assert_allclose(lowered_value(form, forms.unknowns, values, (2, 1)), [[2.0], [3.0]])


def test_composite_expression_matches_evaluation():
    rng = np.random.default_rng(2)
    A = rng.normal(size=(2, 2))
    B = rng.normal(size=(3, 3))
    C = rng.uniform(1.0, 2.0, size=(2, 3))
    X = Variable("X", shape=(2, 3))
    value = rng.normal(size=(2, 3))

    expr = -((A @ X @ B) * C) / 4.0
    forms = UniqueConicForms()
    form = conic_form(expr, forms)
    np.testing.assert_allclose(
        lowered_value(form, forms.unknowns, {X: value}, expr.size),
        -((A @ value @ B) * C) / 4.0,
    )


# =============================================================================
# Memoization
# =============================================================================


def test_shared_subexpression_is_lowered_once(monkeypatch):
    calls = []
    original = MultiplyAtom._lower

    def spy(self, forms):
        calls.append(self.id_hash)
        return original(self, forms)

    monkeypatch.setattr(MultiplyAtom, "_lower", spy)

    x = Variable("x", shape=(2,))
    shared = Constant(np.array([[1.0, 2.0], [3.0, 4.0]])) @ x
    left = 2.0 * shared
    right = Constant(np.ones((1, 2))) @ shared

    lowered = lower_expressions([left, right])
    assert calls.count(shared.id_hash) == 1
    assert lowered.hits >= 1
    assert len(lowered.forms) == 2


def test_equal_reconstructions_share_one_cache_entry():
    x = Variable("x", shape=(2,))
    A = np.array([[1.0, 2.0], [3.0, 4.0]])
    first = Constant(A) @ x
    second = Constant(A) @ x
    forms = UniqueConicForms()
    form_a = forms.lower(first)
    computations = forms.computations
    form_b = forms.lower(second)
    assert form_a is form_b
    assert forms.computations == computations
    assert second in forms
    assert forms.get(second) is form_a


def test_cache_counts_computations_and_hits():
    x = Variable("x", shape=(2,))
    forms = UniqueConicForms()
    conic_form(2.0 * x, forms)
    assert forms.computations == 3  # 2, x and 2x
    assert len(forms) == 3
    conic_form(2.0 * x, forms)
    assert forms.computations == 3
    assert forms.hits == 1


# =============================================================================
# DCP Faults
# =============================================================================


def test_conic_form_rejects_non_dcp_expressions():
    x = Variable("x")
    y = Variable("y")
    with pytest.raises(DcpError, match="not DCP compliant"):
        conic_form(x @ y)


def test_lowering_rechecks_products_without_the_gate():
    forms = UniqueConicForms(config=LoweringConfig(check_dcp=False))
    with pytest.raises(DcpError, match="two non-constant expressions"):
        conic_form(Variable("x") @ Variable("y"), forms)
    with pytest.raises(DcpError, match="two non-constant expressions"):
        conic_form(Variable("A", shape=(2, 2)) @ Variable("z", shape=(2,)), forms)


def test_zero_scaled_products_keep_their_variables():
    x = Variable("x")
    y = Variable("y")
    z = Constant(0.0) @ x
    with pytest.raises(DcpError, match="not DCP compliant"):
        conic_form(z @ y)

    X = Variable("X", shape=(2, 2))
    forms = UniqueConicForms()
    form = conic_form(Constant(np.zeros((2, 2))) @ X, forms)
    assert X in forms.unknowns
    assert form.shape == (4, 4)
    np.testing.assert_array_equal(form.matrix.toarray(), 0.0)


def test_square_of_zero_scaled_expression_lowers_to_epigraph():
    x = Variable("x")
    z = Constant(0.0) @ x
    lowered = lower_expressions([z @ z], variables=[x])
    assert lowered.unknowns.size == 2
    assert len(lowered.constraints) == 1
    np.testing.assert_array_equal(lowered.forms[0].matrix.toarray(), [[0.0, 1.0]])


def test_deep_chains_lower_without_recursion():
    x = Variable("x")
    expr = x
    for _ in range(3000):
        expr = 1.0005 * expr
    forms = UniqueConicForms()
    form = conic_form(expr, forms)
    assert expr.vexity() is Vexity.AFFINE
    assert expr.sign() is Sign.NOSIGN
    np.testing.assert_allclose(form.matrix.toarray(), [[1.0005**3000]])
    assert forms.computations == 3002  # x, the shared Constant and 3000 products


# =============================================================================
# Square
# =============================================================================


def test_square_lowers_to_epigraph_with_cone_constraints():
    s = Variable("s")
    lowered = lower_expressions([s * s], variables=[s])
    assert lowered.unknowns.size == 2
    assert len(lowered.constraints) == 1

    form = lowered.forms[0]
    np.testing.assert_array_equal(form.matrix.toarray(), [[0.0, 1.0]])

    constraint = lowered.constraints[0]
    assert constraint.cone == "SOC"
    # s = 3, t = 9 sits on the boundary of the cone: ||(6, 8)|| == 10
    np.testing.assert_allclose(constraint.form.apply([3.0, 9.0]), [10.0, 6.0, 8.0])


def test_elementwise_square_emits_one_cone_per_entry():
    x = Variable("x", shape=(3,))
    lowered = lower_expressions([2.0 * (x * x)], variables=[x])
    assert lowered.unknowns.size == 6
    assert len(lowered.constraints) == 3
    assert all(c.form.shape == (3, 6) for c in lowered.constraints)
    np.testing.assert_allclose(lowered.forms[0].matrix.toarray()[:, 3:], 2.0 * np.eye(3))


def test_square_of_constant_lowers_to_constant():
    form = conic_form(Constant(3.0) * Constant(3.0))
    np.testing.assert_allclose(form.offset, [9.0])
    assert form.matrix.nnz == 0


# =============================================================================
# Configuration and Passes
# =============================================================================


def test_nonfinite_operators_propagate_by_default():
    x = Variable("x")
    with pytest.warns(RuntimeWarning):
        expr = x / 0.0
    form = conic_form(expr)
    assert not form.is_finite()
    assert np.isinf(form.matrix.toarray()).any()


def test_reject_nonfinite_raises():
    x = Variable("x")
    with pytest.warns(RuntimeWarning):
        expr = x / 0.0
    forms = UniqueConicForms(config=LoweringConfig(reject_nonfinite=True))
    with pytest.raises(ValueError, match="non-finite"):
        conic_form(expr, forms)


def test_forms_are_padded_to_the_final_unknown_count():
    x = Variable("x", shape=(2,))
    y = Variable("y", shape=(2,))
    lowered = lower_expressions([Constant(np.eye(2)) @ x, 2.0 * y])
    assert lowered.unknowns.variables == [x, y]
    assert [form.shape for form in lowered.forms] == [(2, 4), (2, 4)]
    np.testing.assert_allclose(lowered.forms[1].matrix.toarray()[:, 2:], 2.0 * np.eye(2))


def test_preregistered_variables_fix_the_layout():
    x = Variable("x", shape=(2,))
    y = Variable("y", shape=(2,))
    lowered = lower_expressions([2.0 * y], variables=[x, y])
    assert lowered.unknowns.slice_of(y) == slice(2, 4)
    np.testing.assert_allclose(lowered.forms[0].matrix.toarray()[:, :2], 0.0)


def test_printing_summary(capsys):
    x = Variable("x", shape=(2,))
    lower_expressions([2.0 * x, x * x], config=LoweringConfig(printing=True))
    out = capsys.readouterr().out
    assert "Cache Hits" in out
    assert "Unknowns" in out


# =============================================================================
# Stacked Unknowns and Conic Forms
# =============================================================================


def test_stacked_unknowns_register_is_idempotent():
    x = Variable("x", shape=(2, 2))
    unknowns = StackedUnknowns()
    assert unknowns.register(x) == slice(0, 4)
    assert unknowns.register(x) == slice(0, 4)
    assert unknowns.size == 4
    assert len(unknowns) == 1
    assert x in unknowns


def test_stacked_unknowns_errors():
    x = Variable("x", shape=(2,))
    unknowns = StackedUnknowns([x])
    with pytest.raises(ValueError, match="has no slice assigned"):
        unknowns.slice_of(Variable("y"))
    with pytest.raises(ValueError, match="No value provided for variable 'x'"):
        unknowns.stack({})


def test_stacked_unknowns_flatten_column_major():
    X = Variable("X", shape=(2, 2))
    unknowns = StackedUnknowns([X])
    np.testing.assert_array_equal(
        unknowns.stack({X: np.array([[1.0, 2.0], [3.0, 4.0]])}),
        [1.0, 3.0, 2.0, 4.0],
    )


def test_conic_form_cannot_shrink():
    form = conic_form(Variable("x", shape=(2,)))
    assert form.with_columns(2) is form
    assert form.with_columns(5).shape == (2, 5)
    with pytest.raises(ValueError, match="Cannot shrink"):
        form.with_columns(1)
