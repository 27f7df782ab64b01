"""Float32 vector BLOB encoding shared by the chunk store and the embedding cache.

Vectors are stored as little-endian float32 arrays (the sqlite-vec wire format),
so ``vec_distance_cosine`` and ``vec_length`` can operate on them in SQL.
"""

from __future__ import annotations

import math
import struct
from collections.abc import Sequence

from sqlite_vec import serialize_float32

_FLOAT_SIZE = 4


def serialize_vector(vector: Sequence[float]) -> bytes:
    """Encode *vector* as a float32 BLOB.

    Raises:
        ValueError: If *vector* is empty or contains NaN/inf.
    """
    if not vector:
        raise ValueError("cannot serialize an empty vector")
    if not all(math.isfinite(v) for v in vector):
        raise ValueError("vector contains non-finite values")
    return serialize_float32(list(vector))


def blob_dims(blob: bytes) -> int | None:
    """Return the number of float32 values in *blob*, or None if it is malformed."""
    if not blob or len(blob) % _FLOAT_SIZE:
        return None
    return len(blob) // _FLOAT_SIZE


def deserialize_vector(blob: bytes, dims: int | None = None) -> list[float]:
    """Decode a float32 BLOB back into a list of floats.

    Args:
        blob: Bytes produced by serialize_vector().
        dims: Expected dimension count; checked when given.

    Raises:
        ValueError: If *blob* is not a whole number of float32 values, its
            length disagrees with *dims*, or it decodes to non-finite values.
    """
    n = blob_dims(blob)
    if n is None:
        raise ValueError(f"malformed vector blob ({len(blob) if blob else 0} bytes)")
    if dims is not None and n != dims:
        raise ValueError(f"vector blob has {n} dims, expected {dims}")
    values = list(struct.unpack(f"<{n}f", blob))
    if not all(math.isfinite(v) for v in values):
        raise ValueError("vector blob contains non-finite values")
    return values
