"""Tests for float32 vector BLOB encoding."""

from __future__ import annotations

import math

import pytest

from recall.db.vectors import blob_dims, deserialize_vector, serialize_vector


def test_serialize_is_four_bytes_per_value():
    assert len(serialize_vector([0.1, 0.2, 0.3])) == 12


def test_deserialize_restores_float32_values():
    values = deserialize_vector(serialize_vector([0.5, -1.25, 3.0]))
    assert values == [0.5, -1.25, 3.0]


def test_serialize_empty_raises():
    with pytest.raises(ValueError, match="empty"):
        serialize_vector([])


@pytest.mark.parametrize("bad", [math.nan, math.inf, -math.inf])
def test_serialize_non_finite_raises(bad):
    with pytest.raises(ValueError, match="non-finite"):
        serialize_vector([0.1, bad])


def test_blob_dims_rejects_partial_float():
    assert blob_dims(b"\x00\x00\x00") is None
    assert blob_dims(b"") is None
    assert blob_dims(b"\x00" * 8) == 2


def test_deserialize_malformed_blob_raises():
    with pytest.raises(ValueError, match="malformed"):
        deserialize_vector(b"\x00\x01\x02")


def test_deserialize_dimension_mismatch_raises():
    blob = serialize_vector([1.0, 2.0])
    with pytest.raises(ValueError, match="expected 3"):
        deserialize_vector(blob, dims=3)


def test_deserialize_nan_payload_raises():
    blob = b"\x00\x00\xc0\x7f"  # float32 NaN
    with pytest.raises(ValueError, match="non-finite"):
        deserialize_vector(blob)
