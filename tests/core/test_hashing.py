"""Tests for envforge.core.hashing."""

from envforge.core.hashing import compute_env_hash, compute_hash


class TestComputeHash:
    def test_deterministic(self):
        assert compute_hash("a", 1) == compute_hash("a", 1)

    def test_order_matters(self):
        assert compute_hash("a", "b") != compute_hash("b", "a")

    def test_length(self):
        assert len(compute_hash("x")) == 32
        assert len(compute_hash("x", length=8)) == 8


class TestComputeEnvHash:
    def test_key_order_independent(self):
        assert compute_env_hash({"B": "2", "A": "1"}) == compute_env_hash({"A": "1", "B": "2"})

    def test_value_change_changes_hash(self):
        assert compute_env_hash({"A": "1"}) != compute_env_hash({"A": "2"})

    def test_none_and_empty_are_equal(self):
        assert compute_env_hash(None) == compute_env_hash({})

    def test_default_length_is_eight(self):
        assert len(compute_env_hash({"A": "1"})) == 8
