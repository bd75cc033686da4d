"""Tests for point ids and vector resolution."""

import math
import uuid

import numpy as np
import pytest

from shelfsync.schema import UNNAMED, VectorLayout
from shelfsync.vectors import (
    EMBEDDING_VECTOR_SIZE,
    UUID_NAMESPACE,
    build_placeholder_vector,
    compose_point_vector,
    compose_query_vector,
    point_id,
    resolve_vector,
    vector_problem,
)


class TestPointId:
    def test_same_input_same_id(self):
        assert point_id("products", "abc") == point_id("products", "abc")

    def test_collection_is_part_of_the_key(self):
        assert point_id("products", "abc") != point_id("suppliers", "abc")

    def test_is_name_based_uuid(self):
        expected = uuid.uuid5(UUID_NAMESPACE, "batches:b-1")
        assert point_id("batches", "b-1") == str(expected)

    def test_numeric_entity_id(self):
        assert point_id("sales", 42) == point_id("sales", "42")


class TestPlaceholderVector:
    def test_deterministic_for_seed(self):
        assert build_placeholder_vector("seed-1") == build_placeholder_vector("seed-1")

    def test_different_seeds_differ(self):
        assert build_placeholder_vector("seed-1") != build_placeholder_vector("seed-2")

    def test_shape_and_range(self):
        vector = build_placeholder_vector("x")
        assert len(vector) == EMBEDDING_VECTOR_SIZE
        assert all(0.0 <= v < 0.1 for v in vector)

    def test_empty_seed_uses_default(self):
        assert build_placeholder_vector(None) == build_placeholder_vector("default")
        assert build_placeholder_vector("") == build_placeholder_vector("default")

    def test_custom_size(self):
        assert len(build_placeholder_vector("x", size=8)) == 8


class TestVectorProblem:
    def test_valid(self):
        assert vector_problem([0.5] * 4, size=4) is None

    def test_numpy_array_is_accepted(self):
        assert vector_problem(np.ones(4), size=4) is None

    @pytest.mark.parametrize(
        "candidate, reason",
        [
            (None, "no embedding"),
            ("not a vector", "expected a list"),
            ([0.1] * 3, "length 3 != 4"),
            ([0.1, 0.2, math.nan, 0.4], "non-finite"),
            ([0.1, 0.2, math.inf, 0.4], "non-finite"),
            ([0.1, "0.2", 0.3, 0.4], "non-numeric"),
            ([0.1, True, 0.3, 0.4], "non-numeric"),
        ],
    )
    def test_invalid(self, candidate, reason):
        assert reason in vector_problem(candidate, size=4)


class TestResolveVector:
    def test_valid_candidate_is_returned_as_floats(self):
        assert resolve_vector([1, 2, 3], "seed", "items:1", size=3) == [1.0, 2.0, 3.0]

    def test_malformed_candidate_falls_back_deterministically(self):
        first = resolve_vector([1.0, math.nan], "seed", "items:1", size=3)
        second = resolve_vector([0.0] * 7, "seed", "items:1", size=3)
        assert first == second == build_placeholder_vector("seed", size=3)

    def test_fallback_logs_reason_and_context(self, caplog):
        with caplog.at_level("WARNING", logger="shelfsync.vectors"):
            resolve_vector([1.0], "seed", "products:p-1", size=3)
        assert "products:p-1" in caplog.text
        assert "length 1 != 3" in caplog.text

    def test_missing_candidate_does_not_warn(self, caplog):
        with caplog.at_level("WARNING", logger="shelfsync.vectors"):
            resolve_vector(None, "seed", "products:p-1", size=3)
        assert caplog.text == ""


class TestCompose:
    def test_unnamed_layout(self):
        assert compose_point_vector(UNNAMED, [1.0]) == [1.0]
        assert compose_query_vector(UNNAMED, [1.0]) == [1.0]

    def test_named_layout(self):
        layout = VectorLayout(named=True, vector_name="text")
        assert compose_point_vector(layout, [1.0]) == {"text": [1.0]}
        assert compose_query_vector(layout, [1.0]) == {"name": "text", "vector": [1.0]}

    def test_named_layout_without_name_uses_default(self):
        layout = VectorLayout(named=True)
        assert compose_point_vector(layout, [1.0]) == {"default": [1.0]}
