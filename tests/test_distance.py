import numpy as np
import pandas as pd
import pytest

from optstrata import (
    DistanceMatrix, DistanceMatrixBuilder, FORBIDDEN, UnitCatalog,
    absolute_distance, propensity_distance, propensity_scores, rank_mahalanobis_distance,
)
from optstrata._exceptions import DegenerateScore, EmptyCovariateSet, SingularCovariance


def make_catalog(**extra):
    data = {
        "id":      ["a", "b", "c", "d"],
        "treated": [1, 0, 0, 1],
        "x":       [10.0, 20.0, 30.0, 1000.0],
        "score":   [0.0, 1.0, 3.0, 2.0],
        "group":   ["u", "v", "u", "v"],
    }
    data.update(extra)
    return UnitCatalog.from_frame(pd.DataFrame(data), id="id", treatment="treated")


def make_random_catalog(n=60, seed=3):
    rng = np.random.default_rng(seed)
    x1 = rng.normal(size=n)
    x2 = rng.normal(size=n)
    z = (0.8 * x1 + rng.normal(size=n) > 0.3).astype(int)
    df = pd.DataFrame({"id": np.arange(n), "z": z, "x1": x1, "x2": x2})
    return UnitCatalog.from_frame(df, id="id", treatment="z")


class TestDistanceMatrix:

    def test_shape_mismatch_raises(self):
        with pytest.raises(ValueError, match="shape"):
            DistanceMatrix(["t"], ["c1", "c2"], [[1.0]])

    def test_negative_distance_raises(self):
        with pytest.raises(ValueError, match="non-negative"):
            DistanceMatrix(["t"], ["c"], [[-1.0]])

    def test_values_are_read_only(self):
        m = DistanceMatrix(["t"], ["c"], [[1.0]])
        with pytest.raises(ValueError):
            m.values[0, 0] = 5.0

    def test_forbid_returns_new_matrix(self):
        m = DistanceMatrix(["t1", "t2"], ["c"], [[1.0], [2.0]])
        f = m.forbid([[True], [False]])
        assert f.is_forbidden("t1", "c")
        assert not m.is_forbidden("t1", "c")
        assert f.n_forbidden == 1

    def test_finite_pairs_skip_forbidden(self):
        m = DistanceMatrix(["t1", "t2"], ["c1", "c2"], [[1.0, FORBIDDEN], [FORBIDDEN, 4.0]])
        assert list(m.finite_pairs()) == [("t1", "c1", 1.0), ("t2", "c2", 4.0)]

    def test_submatrix_reorders(self):
        m = DistanceMatrix(["t1", "t2"], ["c1", "c2"], [[1.0, 2.0], [3.0, 4.0]])
        sub = m.submatrix(["t2"], ["c2", "c1"])
        assert sub.values.tolist() == [[4.0, 3.0]]

    def test_aligned_fills_uncovered_pairs_with_forbidden(self):
        small = DistanceMatrix(["t1"], ["c1"], [[7.0]])
        big = DistanceMatrix(["t1", "t2"], ["c1", "c2"], np.zeros((2, 2)))
        out = small.aligned(big)
        assert out[0, 0] == 7.0
        assert np.isinf(out[1, 1])

    def test_to_frame(self):
        m = DistanceMatrix(["t1"], ["c1", "c2"], [[1.0, 2.0]])
        frame = m.to_frame()
        assert frame.loc["t1", "c2"] == 2.0


class TestAbsoluteDistance:

    def test_values(self):
        m = absolute_distance(make_catalog(), "x")
        assert m.treated_ids == ("a", "d")
        assert m.control_ids == ("b", "c")
        assert m.values.tolist() == [[10.0, 20.0], [980.0, 970.0]]

    def test_empty_covariate_raises(self):
        with pytest.raises(EmptyCovariateSet):
            DistanceMatrixBuilder("absolute", []).build(make_catalog())

    def test_categorical_covariate_raises(self):
        with pytest.raises(ValueError, match="categorical"):
            absolute_distance(make_catalog(), "group")

    def test_builder_rejects_several_covariates(self):
        with pytest.raises(ValueError, match="single covariate"):
            DistanceMatrixBuilder("absolute", ["x", "score"]).build(make_catalog())


class TestRankMahalanobisDistance:

    def test_single_covariate_is_scaled_rank_difference(self):
        m = rank_mahalanobis_distance(make_catalog(), ["x"])
        unit = 1.0 / np.sqrt(np.var([1, 2, 3, 4], ddof=1))
        # The outlier x=1000 is only one rank above x=30.
        assert m["a", "b"] == pytest.approx(unit)
        assert m["d", "c"] == pytest.approx(unit)
        assert m["a", "c"] == pytest.approx(2 * unit)

    def test_invariant_to_monotone_transform(self):
        catalog = make_random_catalog()
        df = catalog.frame().reset_index()
        df["x1"] = np.exp(df["x1"])
        transformed = UnitCatalog.from_frame(df, id="id", treatment="z")
        a = rank_mahalanobis_distance(catalog, ["x1", "x2"])
        b = rank_mahalanobis_distance(transformed, ["x1", "x2"])
        np.testing.assert_allclose(a.values, b.values)

    def test_distances_are_non_negative_and_finite(self):
        m = rank_mahalanobis_distance(make_random_catalog(), ["x1", "x2"])
        assert np.isfinite(m.values).all()
        assert (m.values >= 0).all()

    def test_empty_covariate_set_raises(self):
        with pytest.raises(EmptyCovariateSet):
            rank_mahalanobis_distance(make_catalog(), [])

    def test_constant_covariate_raises_and_names_it(self):
        catalog = make_catalog(k=[1.0, 1.0, 1.0, 1.0])
        with pytest.raises(SingularCovariance) as info:
            rank_mahalanobis_distance(catalog, ["x", "k"])
        assert info.value.covariates == ["k"]

    def test_collinear_covariates_raise(self):
        catalog = make_catalog(x2=[20.0, 40.0, 60.0, 2000.0])
        with pytest.raises(SingularCovariance):
            rank_mahalanobis_distance(catalog, ["x", "x2"])


class TestPropensityDistance:

    def test_standardised_by_pooled_sd(self):
        m = propensity_distance(make_catalog(), "score")
        # treated scores {0, 2}, comparison scores {1, 3}: pooled sd = sqrt(2)
        assert m["a", "b"] == pytest.approx(1 / np.sqrt(2))
        assert m["d", "b"] == pytest.approx(1 / np.sqrt(2))
        assert m["a", "c"] == pytest.approx(3 / np.sqrt(2))

    def test_accepts_series_indexed_by_id(self):
        score = pd.Series({"d": 2.0, "c": 3.0, "b": 1.0, "a": 0.0})
        m = propensity_distance(make_catalog(), score)
        assert m == propensity_distance(make_catalog(), "score")

    def test_series_missing_ids_raises(self):
        with pytest.raises(ValueError, match="missing"):
            propensity_distance(make_catalog(), pd.Series({"a": 0.0}))

    def test_constant_score_raises(self):
        with pytest.raises(DegenerateScore) as info:
            propensity_distance(make_catalog(s=[0.4] * 4), "s")
        assert info.value.score == "s"
        assert "zero pooled standard deviation" in str(info.value)

    def test_too_few_units_names_the_count(self):
        df = pd.DataFrame({"id": ["a", "b"], "treated": [1, 0], "s": [0.1, 0.9]})
        catalog = UnitCatalog.from_frame(df, id="id", treatment="treated")
        with pytest.raises(DegenerateScore, match="at least three units") as info:
            propensity_distance(catalog, "s")
        assert info.value.score == "s"
        assert "has 2" in str(info.value)
        assert "zero pooled" not in str(info.value)

    def test_builder_uses_score(self):
        m = DistanceMatrixBuilder("propensity", score="score").build(make_catalog())
        assert m == propensity_distance(make_catalog(), "score")


class TestPropensityScores:

    @classmethod
    def setup_class(cls):
        cls.catalog = make_random_catalog(n=300)
        cls.scores = propensity_scores(cls.catalog, ["x1", "x2"])

    def test_indexed_by_unit_id(self):
        assert self.scores.index.tolist() == self.catalog.ids

    def test_treated_units_score_higher_on_average(self):
        z = self.catalog.is_treated()
        assert self.scores[z].mean() > self.scores[~z].mean()

    def test_usable_as_distance_input(self):
        m = propensity_distance(self.catalog, self.scores)
        assert m.shape == (len(self.catalog.treated_ids), len(self.catalog.control_ids))
