"""Tests for genmatch/assemble.py.

Tests cover:
- Match matrix rows, column count and None padding
- Subclasses from connected components, numbered in focal data order
- Weight conservation: each matched focal unit hands out exactly 1
- Replacement accumulates weight on reused non-focal units
"""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from genmatch.assemble import (
    assemble_match_result,
    build_match_matrix,
    build_subclass,
    compute_match_weights,
)
from genmatch.matcher import RawMatches


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def labels() -> pd.Index:
    return pd.Index(["t1", "t2", "t3", "c1", "c2", "c3", "c4"], name="unit")


@pytest.fixture
def focal() -> np.ndarray:
    return np.array([1, 1, 1, 0, 0, 0, 0])


@pytest.fixture
def keep_all() -> np.ndarray:
    return np.zeros(7, dtype=bool)


@pytest.fixture
def raw_no_replace() -> RawMatches:
    # Processed in reverse data order; t2 found nothing
    return RawMatches(matches={2: [6, 3], 1: [], 0: [4]}, ratio=2, replace=False)


# ---------------------------------------------------------------------------
# Match matrix
# ---------------------------------------------------------------------------


def test_match_matrix_shape_and_padding(raw_no_replace, labels, focal, keep_all):
    mm = build_match_matrix(raw_no_replace, labels, focal, keep_all)
    assert list(mm.index) == ["t1", "t2", "t3"]
    assert list(mm.columns) == [1, 2]
    assert mm.loc["t1"].tolist() == ["c2", None]
    assert mm.loc["t2"].tolist() == [None, None]
    assert mm.loc["t3"].tolist() == ["c4", "c1"]
    assert mm.index.name == "unit"


def test_match_matrix_excludes_discarded_focal(raw_no_replace, labels, focal):
    discarded = np.array([False, True, False, False, False, False, False])
    mm = build_match_matrix(raw_no_replace, labels, focal, discarded)
    assert list(mm.index) == ["t1", "t3"]


# ---------------------------------------------------------------------------
# Subclasses
# ---------------------------------------------------------------------------


def test_subclass_numbered_in_focal_data_order(raw_no_replace, labels, focal):
    sub = build_subclass(raw_no_replace, labels, focal)
    assert str(sub.dtype) == "Int64"
    assert sub["t1"] == 1 and sub["c2"] == 1
    assert sub["t3"] == 2 and sub["c4"] == 2 and sub["c1"] == 2
    assert pd.isna(sub["t2"])
    assert pd.isna(sub["c3"])


def test_ten_pairs_give_ten_subclasses():
    labels = pd.Index([f"t{i}" for i in range(10)] + [f"c{i}" for i in range(10)])
    focal = np.array([1] * 10 + [0] * 10)
    raw = RawMatches(matches={i: [i + 10] for i in range(10)}, ratio=1)
    sub = build_subclass(raw, labels, focal)
    assert sub.nunique() == 10
    assert sub.value_counts().eq(2).all()
    assert sub.tolist() == list(range(1, 11)) * 2


def test_subclass_none_with_replacement(labels, focal, keep_all):
    raw = RawMatches(matches={0: [3], 1: [3], 2: [4]}, ratio=1, replace=True)
    assembled = assemble_match_result(raw, labels, focal, keep_all)
    assert assembled.subclass is None


# ---------------------------------------------------------------------------
# Weights
# ---------------------------------------------------------------------------


def test_weights_without_replacement(raw_no_replace, labels):
    w = compute_match_weights(raw_no_replace, labels)
    assert w.to_dict() == {
        "t1": 1.0,
        "t2": 0.0,
        "t3": 1.0,
        "c1": 0.5,
        "c2": 1.0,
        "c3": 0.0,
        "c4": 0.5,
    }


def test_weights_accumulate_with_replacement(labels):
    raw = RawMatches(matches={0: [3], 1: [3, 4], 2: [3]}, ratio=2, replace=True)
    w = compute_match_weights(raw, labels)
    assert w["c1"] == pytest.approx(1.0 + 0.5 + 1.0)
    assert w["c2"] == pytest.approx(0.5)


def test_weight_conservation(labels, focal):
    raw = RawMatches(matches={0: [3, 4], 1: [5], 2: [6, 3]}, ratio=2, replace=True)
    w = compute_match_weights(raw, labels)
    assert w[focal == 0].sum() == pytest.approx(w[focal == 1].sum())
    assert (w >= 0).all()
