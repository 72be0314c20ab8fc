"""Disciplined convex programming (DCP) rule engine.

This module defines the three lattices every expression node reports on and the
algebra that composes them:

- `Sign` - the sign of every entry of an expression's value
- `Monotonicity` - how an atom responds to an increase in one of its arguments
- `Vexity` - the curvature classification of an expression

Composition follows the standard DCP rules. A node's composed curvature is its
own intrinsic curvature joined with the curvature of each child scaled by the
node's monotonicity in that child::

    vexity(f(g_1, ..., g_k)) = curvature(f) + sum(monotonicity_i(f) * vexity(g_i))

`Vexity.NOT_DCP` is an ordinary value of the lattice: it absorbs everything it
is joined with, so a violation deep inside a graph surfaces at the root without
interrupting the walk. Callers that need a hard failure raise `DcpError`.

Example:
    >>> Sign.POSITIVE * Sign.NEGATIVE
    <Sign.NEGATIVE: 'negative'>
    >>> Sign.NEGATIVE * Monotonicity.NONDECREASING
    <Monotonicity.NONINCREASING: 'nonincreasing'>
    >>> Monotonicity.NONINCREASING * Vexity.CONVEX
    <Vexity.CONCAVE: 'concave'>
"""

from enum import Enum

import numpy as np


class DcpError(ValueError):
    """Raised when an expression that violates the DCP rules must be lowered or built."""


class Sign(str, Enum):
    """Sign of every entry of an expression's value."""

    POSITIVE = "positive"
    NEGATIVE = "negative"
    ZERO = "zero"
    NOSIGN = "indeterminate"

    @classmethod
    def of(cls, value) -> "Sign":
        """Classify the sign of concrete numeric data.

        Args:
            value: Scalar or array of numbers

        Returns:
            Sign: ZERO if every entry is zero, POSITIVE if every entry is
                nonnegative, NEGATIVE if every entry is nonpositive, otherwise NOSIGN
        """
        value = np.asarray(value)
        if np.all(value == 0):
            return cls.ZERO
        if np.all(value >= 0):
            return cls.POSITIVE
        if np.all(value <= 0):
            return cls.NEGATIVE
        return cls.NOSIGN

    @property
    def is_nonnegative(self) -> bool:
        return self in (Sign.POSITIVE, Sign.ZERO)

    @property
    def is_nonpositive(self) -> bool:
        return self in (Sign.NEGATIVE, Sign.ZERO)

    def __neg__(self):
        if self is Sign.POSITIVE:
            return Sign.NEGATIVE
        if self is Sign.NEGATIVE:
            return Sign.POSITIVE
        return self

    def __mul__(self, other):
        if isinstance(other, Sign):
            if self is Sign.ZERO or other is Sign.ZERO:
                return Sign.ZERO
            if self is Sign.NOSIGN or other is Sign.NOSIGN:
                return Sign.NOSIGN
            return Sign.POSITIVE if self is other else Sign.NEGATIVE
        if isinstance(other, Monotonicity):
            if other is Monotonicity.CONSTANT:
                return Monotonicity.CONSTANT
            if self.is_nonnegative:
                return other
            if self.is_nonpositive:
                return -other
            return Monotonicity.NONMONOTONE
        return NotImplemented


class Monotonicity(str, Enum):
    """Monotonicity of an atom in one of its arguments."""

    NONDECREASING = "nondecreasing"
    NONINCREASING = "nonincreasing"
    CONSTANT = "constant"
    NONMONOTONE = "nonmonotone"

    def __neg__(self):
        if self is Monotonicity.NONDECREASING:
            return Monotonicity.NONINCREASING
        if self is Monotonicity.NONINCREASING:
            return Monotonicity.NONDECREASING
        return self

    def __mul__(self, other):
        if not isinstance(other, Vexity):
            return NotImplemented
        if self is Monotonicity.NONDECREASING:
            return other
        if self is Monotonicity.NONINCREASING:
            return -other
        if self is Monotonicity.CONSTANT:
            return Vexity.CONSTANT
        # Nonmonotone atoms only compose with arguments that are affine or constant
        if other in (Vexity.CONSTANT, Vexity.AFFINE):
            return other
        return Vexity.NOT_DCP


class Vexity(str, Enum):
    """Curvature of an expression under the DCP rules."""

    CONSTANT = "constant"
    AFFINE = "affine"
    CONVEX = "convex"
    CONCAVE = "concave"
    NOT_DCP = "not_dcp"

    def __neg__(self):
        if self is Vexity.CONVEX:
            return Vexity.CONCAVE
        if self is Vexity.CONCAVE:
            return Vexity.CONVEX
        return self

    def __add__(self, other):
        if not isinstance(other, Vexity):
            return NotImplemented
        if self is Vexity.NOT_DCP or other is Vexity.NOT_DCP:
            return Vexity.NOT_DCP
        if self is Vexity.CONSTANT:
            return other
        if other is Vexity.CONSTANT or self is other:
            return self
        if self is Vexity.AFFINE:
            return other
        if other is Vexity.AFFINE:
            return self
        # convex + concave
        return Vexity.NOT_DCP
