"""Layout of the stacked vector of unknowns.

All lowered operators act on one concatenated vector holding the entries of
every Variable in a compile pass. `StackedUnknowns` assigns each Variable a
contiguous slice of that vector, in registration order, and flattens concrete
variable values into it (column-major, matching the vectorization used by
`ConicForm`).

Example:
    >>> x = Variable("x", shape=(2,))
    >>> Y = Variable("Y", shape=(2, 3))
    >>> unknowns = StackedUnknowns([x, Y])
    >>> unknowns.slice_of(Y)
    slice(2, 8, None)
    >>> unknowns.size
    8
"""

from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np

if TYPE_CHECKING:
    from dcpcore.symbolic.expr.expr import Variable


class StackedUnknowns:
    """Ordered assignment of Variables to slices of the stacked unknowns vector."""

    def __init__(self, variables: Optional[Iterable["Variable"]] = None):
        self._entries: Dict[str, Tuple["Variable", slice]] = {}
        self._size = 0
        for variable in variables or []:
            self.register(variable)

    @property
    def size(self) -> int:
        """Total number of scalar unknowns registered so far."""
        return self._size

    @property
    def variables(self) -> List["Variable"]:
        return [variable for variable, _ in self._entries.values()]

    def __contains__(self, variable) -> bool:
        return variable.id_hash in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def register(self, variable: "Variable") -> slice:
        """Assign the next free range of the stacked vector to a variable.

        Registering a variable that is already present returns its existing
        slice, so positions are stable for the lifetime of the layout.
        """
        entry = self._entries.get(variable.id_hash)
        if entry is not None:
            return entry[1]
        sl = slice(self._size, self._size + variable.vectorized_size)
        self._entries[variable.id_hash] = (variable, sl)
        self._size = sl.stop
        return sl

    def slice_of(self, variable: "Variable") -> slice:
        entry = self._entries.get(variable.id_hash)
        if entry is None:
            raise ValueError(f"Variable {variable.name!r} has no slice assigned")
        return entry[1]

    def stack(self, values: Mapping["Variable", np.ndarray]) -> np.ndarray:
        """Flatten concrete variable values into one stacked vector.

        Args:
            values: Mapping from Variable to its value

        Returns:
            np.ndarray: Vector of length `size`

        Raises:
            ValueError: If a registered variable has no value
        """
        x = np.zeros(self._size)
        for variable, sl in self._entries.values():
            if variable not in values:
                raise ValueError(f"No value provided for variable {variable.name!r}")
            x[sl] = variable.coerce_value(values[variable]).ravel(order="F")
        return x

    def __repr__(self):
        inner = ", ".join(
            f"{variable.name}[{sl.start}:{sl.stop}]" for variable, sl in self._entries.values()
        )
        return f"StackedUnknowns({inner})"
