"""End-to-end tests for genmatch/pipeline.py: run_genetic_matching.

Tests cover:
- Result structure: one match-matrix row per focal unit, ratio columns
- No non-focal unit is reused without replacement
- Exact groups and calipers hold on every matched pair
- Weight conservation between focal and non-focal units
- Agreement with sklearn's nearest neighbors for unconstrained matching
  with replacement under a fixed identity metric
- ATC swaps the roles of treated and control units
- Genetic optimization end to end with seeded reproducibility
- Exact-group, caliper and shortfall advisories
- Input validation (label alignment, reserved names) and structural
  infeasibility errors
"""

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
from sklearn.neighbors import NearestNeighbors

from generate_sample_data import generate_grid_pairs, generate_training_cohort
from genmatch.errors import (
    CapacityWarning,
    ConfigurationError,
    InvalidCaliperDimension,
    NoCovariatesError,
    NoMatchesFoundError,
    OptimizerFailure,
    StructuralInfeasibilityError,
)
from genmatch.optimizer import FixedWeighting, OptimizedWeighting
from genmatch.pipeline import MatchResult, focal_indicator, run_genetic_matching


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

COVARIATES = ["age", "educ", "race", "married", "nodegree", "re74", "re75"]
FAST = {"pop_size": 8, "max_generations": 2, "wait_generations": 1}


@pytest.fixture(name="cohort")
def _cohort_fixture() -> pd.DataFrame:
    return generate_training_cohort(n=200, seed=42)


def _run(df, **kwargs) -> MatchResult:
    kwargs.setdefault("weighting", FixedWeighting())
    return run_genetic_matching(df, "treat", kwargs.pop("covariates", COVARIATES), **kwargs)


def _pairs(result: MatchResult) -> list[tuple[str, str]]:
    return [
        (focal, matched)
        for focal, row in result.match_matrix.iterrows()
        for matched in row
        if matched is not None
    ]


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------


def test_returns_match_result(cohort):
    result = _run(cohort)
    assert isinstance(result, MatchResult)
    assert result.estimand == "ATT"
    assert result.m_order == "data"


def test_one_row_per_treated_unit(cohort):
    result = _run(cohort, ratio=2)
    treated = cohort.index[cohort["treat"] == 1]
    assert list(result.match_matrix.index) == list(treated)
    assert list(result.match_matrix.columns) == [1, 2]


def test_matches_are_control_units(cohort):
    result = _run(cohort)
    control = set(cohort.index[cohort["treat"] == 0])
    assert all(m in control for _, m in _pairs(result))
    assert all(f != m for f, m in _pairs(result))


def test_grid_scenario_ten_subclasses():
    df = generate_grid_pairs(n_pairs=10)
    result = run_genetic_matching(
        df, "treat", ["x1", "x2"], weighting=FixedWeighting(np.eye(2)), m_order="data"
    )
    assert result.match_matrix[1].tolist() == [f"c{i}" for i in range(10)]
    assert result.subclass.nunique() == 10
    assert result.subclass.value_counts().eq(2).all()
    assert (result.weights == 1.0).all()


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("ratio", [1, 2])
def test_no_reuse_without_replacement(cohort, ratio):
    result = _run(cohort, ratio=ratio)
    used = [m for _, m in _pairs(result)]
    assert len(used) == len(set(used))


def test_reuse_allowed_with_replacement(cohort):
    result = _run(cohort, replace=True)
    assert result.subclass is None
    assert result.n_unmatched_focal == 0


def test_exact_groups_hold(cohort):
    result = _run(cohort, exact=["race", "married"])
    keys = cohort[["race", "married"]].apply(tuple, axis=1)
    for focal, matched in _pairs(result):
        assert keys[focal] == keys[matched]


def _blocked_grid(n_pairs=6) -> pd.DataFrame:
    df = generate_grid_pairs(n_pairs=n_pairs)
    return df.assign(block=[int(label[1:]) % 2 for label in df.index])


def test_fixed_matrix_with_exact_matching():
    df = _blocked_grid()
    covs = ["x1", "x2"]
    weighting = FixedWeighting(pd.DataFrame(np.eye(2), index=covs, columns=covs))
    result = run_genetic_matching(df, "treat", covs, exact=["block"], weighting=weighting)
    assert (result.weight_matrix.loc["exact_group"] == 0).all()
    assert (result.weight_matrix["exact_group"] == 0).all()
    assert result.match_matrix[1].tolist() == [f"c{i}" for i in range(6)]


def test_stranded_exact_group_warns(cohort):
    first_treated = cohort.index[cohort["treat"] == 1][0]
    df = cohort.assign(site="north")
    df.loc[first_treated, "site"] = "east"
    with pytest.warns(CapacityWarning, match="site=east"):
        result = _run(df, exact=["site"])
    assert [a.source for a in result.advisories if a.source == "exact"] == ["exact"]
    assert result.match_matrix.loc[first_treated].isna().all()


def test_raw_caliper_holds(cohort):
    result = _run(cohort, caliper={"age": 2.0}, std_caliper=False)
    for focal, matched in _pairs(result):
        assert abs(cohort.at[focal, "age"] - cohort.at[matched, "age"]) <= 2.0


def test_standardized_score_caliper_holds(cohort):
    score = cohort["score"]
    result = _run(cohort, score=score, caliper={"": 0.1})
    width = 0.1 * np.std(score.to_numpy(), ddof=0)
    pairs = _pairs(result)
    assert pairs
    for focal, matched in pairs:
        assert abs(score[focal] - score[matched]) <= width + 1e-12


def test_antiexact_holds(cohort):
    result = _run(cohort, antiexact=["married"], replace=True)
    for focal, matched in _pairs(result):
        assert cohort.at[focal, "married"] != cohort.at[matched, "married"]


def test_restrict_pair_never_matched():
    df = generate_grid_pairs(n_pairs=5)
    result = run_genetic_matching(
        df,
        "treat",
        ["x1", "x2"],
        weighting=FixedWeighting(np.eye(2)),
        restrict=[("t0", "c0")],
    )
    assert result.match_matrix.at["t0", 1] != "c0"


@pytest.mark.parametrize("replace", [False, True])
def test_weight_conservation(cohort, replace):
    result = _run(cohort, ratio=2, replace=replace)
    treated = cohort["treat"] == 1
    assert result.weights[~treated].sum() == pytest.approx(result.n_matched_focal)
    assert result.weights[treated].sum() == pytest.approx(result.n_matched_focal)


def test_discarded_units_unmatched(cohort):
    discarded = pd.Series(False, index=cohort.index)
    discarded.iloc[:20] = True
    result = _run(cohort, discarded=discarded)
    dropped = set(cohort.index[:20])
    assert not dropped & set(result.match_matrix.index)
    assert not dropped & {m for _, m in _pairs(result)}
    assert (result.weights[discarded] == 0).all()


def test_matches_sklearn_nearest_neighbors():
    # Continuous covariates so exact distance ties do not occur
    rng = np.random.default_rng(9)
    covs = ["x1", "x2", "x3"]
    df = pd.DataFrame(rng.normal(size=(120, 3)), columns=covs)
    df["treat"] = (rng.uniform(size=120) < 0.3).astype(int)
    result = run_genetic_matching(
        df, "treat", covs, replace=True, weighting=FixedWeighting(np.eye(3))
    )

    treated = df[df["treat"] == 1]
    control = df[df["treat"] == 0]
    nn = NearestNeighbors(n_neighbors=1).fit(control[covs].to_numpy())
    _, idx = nn.kneighbors(treated[covs].to_numpy())
    expected = control.index[idx[:, 0]].tolist()
    assert result.match_matrix[1].tolist() == expected


# ---------------------------------------------------------------------------
# Estimand and ordering
# ---------------------------------------------------------------------------


def test_focal_indicator_does_not_modify_input():
    treat = np.array([1, 0, 1])
    assert focal_indicator(treat, "ATC").tolist() == [0, 1, 0]
    assert focal_indicator(treat, "ATT").tolist() == [1, 0, 1]
    assert treat.tolist() == [1, 0, 1]


def test_atc_matches_controls_to_treated(cohort):
    result = _run(cohort, estimand="ATC", replace=True)
    control = cohort.index[cohort["treat"] == 0]
    treated = set(cohort.index[cohort["treat"] == 1])
    assert result.estimand == "ATC"
    assert list(result.match_matrix.index) == list(control)
    assert all(m in treated for _, m in _pairs(result))


def test_default_order_with_score(cohort):
    assert _run(cohort, score=cohort["score"]).m_order == "largest"
    assert _run(cohort, score=cohort["score"], estimand="ATC", replace=True).m_order == "smallest"


def test_random_order_reproducible(cohort):
    a = _run(cohort, m_order="random", seed=3)
    b = _run(cohort, m_order="random", seed=3)
    pd.testing.assert_frame_equal(a.match_matrix, b.match_matrix)


# ---------------------------------------------------------------------------
# Genetic optimization end to end
# ---------------------------------------------------------------------------


def test_genetic_matching_end_to_end(cohort):
    result = run_genetic_matching(
        cohort,
        "treat",
        COVARIATES,
        score=cohort["score"],
        optimizer_options=FAST,
        include_obj=True,
        seed=11,
    )
    assert result.obj is not None
    assert list(result.weight_matrix.columns)[-1] == "score"
    W = result.weight_matrix.to_numpy()
    np.testing.assert_allclose(W, W.T)
    assert result.n_matched_focal > 0


def test_genetic_matching_reproducible(cohort):
    kwargs = dict(optimizer_options=FAST, seed=4, weighting=None)
    a = _run(cohort, **kwargs)
    b = _run(cohort, **kwargs)
    pd.testing.assert_frame_equal(a.weight_matrix, b.weight_matrix)
    pd.testing.assert_frame_equal(a.match_matrix, b.match_matrix)


def test_obj_omitted_by_default(cohort):
    result = _run(cohort, weighting=None, optimizer_options=FAST, seed=1)
    assert result.obj is None


def test_verbose_records_progress(cohort):
    result = _run(cohort, verbose=True)
    messages = [a.message for a in result.advisories if a.severity == "info"]
    assert "Done." in messages


def test_verbose_reports_calipers_in_sd_units(cohort):
    result = _run(cohort, caliper={"age": 0.5}, verbose=True)
    reports = [a.message for a in result.advisories if a.source == "caliper"]
    assert len(reports) == 1
    assert reports[0].startswith("Calipers: age = ")
    assert reports[0].endswith("(0.5 SD)")


def test_optimizer_failure_propagates(cohort):
    def broken(problem):
        raise ValueError("bad population")

    with pytest.raises(OptimizerFailure, match=r"\(from optimizer\) bad population"):
        _run(cohort, weighting=OptimizedWeighting(broken))


# ---------------------------------------------------------------------------
# Capacity
# ---------------------------------------------------------------------------


def test_fewer_controls_warns_and_leaves_unmatched():
    df = generate_grid_pairs(n_pairs=6).iloc[:9]  # 6 treated, 3 control
    with pytest.warns(CapacityWarning, match="Fewer control units"):
        result = run_genetic_matching(df, "treat", ["x1", "x2"], weighting=FixedWeighting())
    assert result.n_matched_focal == 3
    assert result.n_unmatched_focal == 3
    shortfall = [a for a in result.advisories if a.source == "matcher"]
    assert shortfall[0].message == "3 focal units received fewer than 1 matches (3 with none)."


def test_not_enough_controls_for_ratio_raises():
    df = generate_grid_pairs(n_pairs=6).drop(["t4", "t5"])  # 4 treated, 6 control
    with pytest.raises(ConfigurationError, match="Not enough control units"):
        run_genetic_matching(df, "treat", ["x1", "x2"], ratio=2, weighting=FixedWeighting())


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


def test_exact_without_overlap_raises(cohort):
    df = cohort.assign(site=np.where(cohort["treat"] == 1, "north", "south"))
    with pytest.raises(StructuralInfeasibilityError, match="No matches were found"):
        _run(df, exact=["site"])


def test_zero_caliper_on_separated_binary_raises(cohort):
    df = cohort.assign(flag=cohort["treat"])
    with pytest.raises(NoMatchesFoundError):
        _run(df, covariates=["age", "flag"], caliper={"flag": 0.0})


def test_empty_covariates_raise(cohort):
    with pytest.raises(NoCovariatesError):
        _run(cohort, covariates=[])


def test_unknown_caliper_dimension_raises(cohort):
    with pytest.raises(InvalidCaliperDimension):
        _run(cohort, caliper={"race": 0.2})


def test_unknown_optimizer_option_raises(cohort):
    with pytest.raises(ConfigurationError, match="Unrecognized"):
        _run(cohort, optimizer_options={"population": 10})


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"ratio": 0}, "ratio"),
        ({"estimand": "ATE"}, "estimand"),
        ({"m_order": "largest"}, "requires a score"),
    ],
)
def test_invalid_arguments(cohort, kwargs, message):
    with pytest.raises(ConfigurationError, match=message):
        _run(cohort, **kwargs)


def test_non_binary_treatment_raises(cohort):
    df = cohort.assign(treat=cohort["treat"] * 2)
    with pytest.raises(ConfigurationError, match="binary"):
        _run(df)


def test_missing_treatment_column_raises(cohort):
    with pytest.raises(KeyError):
        run_genetic_matching(cohort, "treated", COVARIATES, weighting=FixedWeighting())


def test_duplicate_index_raises(cohort):
    df = cohort.copy()
    df.index = ["dup"] * len(df)
    with pytest.raises(ConfigurationError, match="unique"):
        _run(df)


def test_empty_dataframe_raises(cohort):
    with pytest.raises(ConfigurationError, match="empty"):
        _run(cohort.iloc[0:0])


def test_reserved_exact_group_column_raises():
    df = _blocked_grid().assign(exact_group=1.0)
    with pytest.raises(ConfigurationError, match="reserved"):
        run_genetic_matching(
            df, "treat", ["x1", "exact_group"], exact=["block"], weighting=FixedWeighting()
        )


def test_discarded_series_missing_labels_raises(cohort):
    discarded = pd.Series([False, False], index=cohort.index[:2])
    with pytest.raises(ConfigurationError, match="discarded has no entry for 198"):
        _run(cohort, discarded=discarded)


def test_discarded_series_in_other_order_is_aligned(cohort):
    discarded = pd.Series(False, index=cohort.index)
    discarded.iloc[:20] = True
    result = _run(cohort, discarded=discarded.iloc[::-1])
    assert not set(cohort.index[:20]) & set(result.match_matrix.index)


def test_discarded_with_missing_values_raises(cohort):
    discarded = [False] * (len(cohort) - 1) + [None]
    with pytest.raises(ConfigurationError, match="discarded contains missing values"):
        _run(cohort, discarded=discarded)


def test_score_series_missing_labels_raises(cohort):
    with pytest.raises(ConfigurationError, match="score has no entry"):
        _run(cohort, score=cohort["score"].iloc[10:])
