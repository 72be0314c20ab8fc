"""Structural identity for expression nodes.

Every node carries an `id_hash` computed once at construction. For atoms the
identity depends only on the operator tag and the identities of the children, so
building the same operation over the same children twice yields the same
identity. This is what the lowering cache keys on, and what `multiply` uses to
detect self-multiplication such as ``x * x``.

Leaves hash differently:

- Constants hash their shape and data, so equal data shares an identity
- Variables hash a process-wide serial number, so every Variable instance is a
  distinct unknown even when two of them share a name

Two semantically equal but syntactically different constructions (``a * b`` and
``b * a``) are not collapsed; only literal sharing of children is deduplicated.
"""

import hashlib
import itertools
from typing import Iterable

import numpy as np

_VARIABLE_SERIAL = itertools.count()


def structural_hash(head: str, child_hashes: Iterable[str]) -> str:
    """Hash an atom from its operator tag and its children's identities.

    Args:
        head: Operator tag of the atom (e.g. ``"*"``)
        child_hashes: Identities of the children, in order

    Returns:
        str: Hex SHA-256 digest
    """
    hasher = hashlib.sha256()
    hasher.update(head.encode())
    hasher.update(b"(")
    for child_hash in child_hashes:
        hasher.update(child_hash.encode())
        hasher.update(b",")
    hasher.update(b")")
    return hasher.hexdigest()


def constant_hash(value: np.ndarray) -> str:
    """Hash a constant from its shape and data."""
    data = np.ascontiguousarray(value, dtype=float)
    hasher = hashlib.sha256()
    hasher.update(b"constant:")
    hasher.update(str(data.shape).encode())
    hasher.update(data.tobytes())
    return hasher.hexdigest()


def variable_hash() -> str:
    """Return a fresh identity for a new Variable instance."""
    hasher = hashlib.sha256()
    hasher.update(f"variable:{next(_VARIABLE_SERIAL)}".encode())
    return hasher.hexdigest()
