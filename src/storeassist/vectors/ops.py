"""Vector math shared by the embedding service and the vector store."""

from __future__ import annotations

import math
from numbers import Real
from typing import Sequence, Tuple

from storeassist.errors import InvalidInputError


def normalize(vector: Sequence[float]) -> Tuple[float, ...]:
    """Return the L2-normalized vector; the all-zero vector stays all-zero."""

    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0.0:
        return tuple(0.0 for _ in vector)
    return tuple(value / norm for value in vector)


def magnitude(vector: Sequence[float]) -> float:
    return math.sqrt(sum(value * value for value in vector))


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    """Dot product of two unit vectors, clamped to [0, 1]."""

    if len(left) != len(right):
        raise InvalidInputError(f"Vector dimensions differ: {len(left)} != {len(right)}")
    score = sum(a * b for a, b in zip(left, right))
    if score < 0.0 or math.isnan(score):
        return 0.0
    if score > 1.0:
        return 1.0
    return score


def validate_vector(vector: Sequence[object], dimension: int) -> Tuple[float, ...]:
    """Check length and element types; return the vector as floats."""

    if len(vector) != dimension:
        raise InvalidInputError(f"Expected vector of dimension {dimension}, got {len(vector)}")
    values: list[float] = []
    for value in vector:
        if isinstance(value, bool) or not isinstance(value, Real):
            raise InvalidInputError(f"Vector contains non-numeric element {value!r}")
        number = float(value)
        if math.isnan(number) or math.isinf(number):
            raise InvalidInputError("Vector contains NaN or infinite values")
        values.append(number)
    return tuple(values)


def zero_vector(dimension: int) -> Tuple[float, ...]:
    return (0.0,) * dimension
