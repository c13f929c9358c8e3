import threading

import numpy as np
import pandas as pd
import pytest

from optstrata import (
    BalanceReport, Caliper, DesignConfig, ExactMatch, MatchedDesign,
    OptimalStratification, StrataEvaluator, UnitCatalog, propensity_scores, unstratified,
)
from optstrata._exceptions import ConfigurationError, EmptyBlock, SolveCancelled


def make_site_data(n=90, seed=21):
    """Three sites of 30 units each; older, richer units are more often treated."""
    rng = np.random.default_rng(seed)
    site = np.repeat(["A", "B", "C"], n // 3)
    age = rng.normal(45, 8, size=n)
    income = rng.normal(50, 10, size=n)
    logit = -1.0 + 0.06 * (age - 45) + 0.04 * (income - 50)
    z = rng.binomial(1, 1 / (1 + np.exp(-logit)))
    for start in range(0, n, n // 3):
        z[start], z[start + 1] = 1, 0
    return pd.DataFrame({
        "id": [f"u{i:03d}" for i in range(n)],
        "z": z, "site": site, "age": age, "income": income,
    })


def make_catalog(df=None):
    df = make_site_data() if df is None else df
    return UnitCatalog.from_frame(df, id="id", treatment="z")


def assert_design_invariants(design, catalog, max_controls=None):
    seen = set()
    for s in design.strata:
        assert s.n_treated == 1
        assert s.n_controls >= 1
        if max_controls is not None:
            assert s.n_controls <= max_controls
        assert not seen & set(s.units)
        seen.update(s.units)
    assert seen | set(design.excluded) == set(catalog.ids)
    assert not seen & design.excluded


class TestFullMatchingWithExactMatch:

    @classmethod
    def setup_class(cls):
        cls.catalog = make_catalog()
        cls.config = DesignConfig(
            covariates=("age", "income"), exact_match="site",
            mode="full", max_controls=3,
        )
        cls.pipeline = OptimalStratification(cls.config)
        cls.design = cls.pipeline.fit(cls.catalog)

    def test_returns_matched_design(self):
        assert isinstance(self.design, MatchedDesign)
        assert self.design.mode == "full"

    def test_structural_invariants(self):
        assert_design_invariants(self.design, self.catalog, max_controls=3)

    def test_strata_share_site(self):
        sites = self.catalog.values("site")
        for s in self.design.strata:
            assert sites.loc[list(s.units)].nunique() == 1
            assert s.block == sites.loc[s.treated[0]]

    def test_every_treated_unit_matched(self):
        matched = {t for s in self.design.strata for t in s.treated}
        assert matched == set(self.catalog.treated_ids)

    def test_blocks_sorted_by_key(self):
        assert [b.key for b in self.pipeline.blocks(self.catalog)] == ["A", "B", "C"]

    def test_stratum_ids_carry_block_key(self):
        assert all(s.id.split(".")[0] == s.block for s in self.design.strata)

    def test_refit_is_identical(self):
        again = OptimalStratification(self.config).fit(self.catalog)
        assert again == self.design
        assert again.objective == self.design.objective

    def test_balance_is_reproducible(self):
        first = self.design.balance(self.catalog, ["age", "income"])
        second = self.design.balance(self.catalog, ["age", "income"])
        assert isinstance(first, BalanceReport)
        assert first == second

    def test_fit_and_assess(self):
        design, report = self.pipeline.fit_and_assess(self.catalog, ["age", "income", "site"])
        assert design == self.design
        assert report.n_strata == design.n_strata
        assert "site[A]" in report.covariates
        # exact matching balances the blocking variable perfectly
        assert report["site[A]"]["adj_diff"] == pytest.approx(0.0)

    def test_summary(self):
        summary = self.design.summary()
        assert "Matched design (full matching)" in summary
        assert "Stratum structure" in summary

    def test_executive_summary(self):
        text = self.design.executive_summary()
        assert "Optimal full matching" in text
        assert "3 exact-match blocks" in text
        assert "ASSUMPTIONS" in text
        assert "checked by: design.balance(catalog)" in text

    def test_assumptions_name_their_checks(self):
        assumptions = self.design.assumptions
        assert [a.testable for a in assumptions] == [False, True, True, False]
        assert assumptions[1].check == "design.balance(catalog)"
        assert assumptions[0].fmt_tag() == "[ argued    ]"
        assert assumptions[1].fmt_tag() == "[ checkable ]"


class TestPairMatchingOnPropensity:

    @classmethod
    def setup_class(cls):
        df = make_site_data()
        catalog = make_catalog(df)
        scores = propensity_scores(catalog, ["age", "income"])
        df["ps"] = scores.loc[df["id"]].to_numpy()
        cls.catalog = make_catalog(df)
        cls.config = DesignConfig(metric="propensity", score="ps")
        cls.design = OptimalStratification(cls.config).fit(cls.catalog)

    def test_pairs(self):
        assert set(self.design.stratum_structure()) == {"1:1"}
        assert self.design.n_strata == len(self.catalog.treated_ids)
        assert_design_invariants(self.design, self.catalog, max_controls=1)

    def test_surplus_comparisons_excluded(self):
        n_surplus = len(self.catalog.control_ids) - len(self.catalog.treated_ids)
        assert len(self.design.excluded) == n_surplus

    def test_linprog_backend_agrees(self):
        lp = OptimalStratification(self.config.replace(backend="linprog")).fit(self.catalog)
        assert lp.objective == pytest.approx(self.design.objective, rel=1e-9)
        assert lp.n_strata == self.design.n_strata

    def test_matching_improves_balance_on_score_inputs(self):
        covariates = ["age", "income"]
        before = StrataEvaluator(covariates).evaluate(unstratified(self.catalog), self.catalog)
        after = self.design.balance(self.catalog, covariates)
        assert after.table["std_diff"].abs().sum() < before.table["std_diff"].abs().sum()


class TestCaliperThroughPipeline:

    def test_caliper_bounds_within_stratum_distance(self):
        catalog = make_catalog()
        caliper = Caliper(4.0, metric="absolute", covariates=("age",))
        config = DesignConfig(
            covariates=("age", "income"), calipers=(caliper,), exact_match="site",
            mode="full", max_controls=4, allow_exclusion=True,
        )
        design = OptimalStratification(config).fit(catalog)
        age = catalog.values("age")
        for s in design.strata:
            for c in s.controls:
                assert abs(age[s.treated[0]] - age[c]) <= 4.0
        assert_design_invariants(design, catalog, max_controls=4)

    def test_parallel_blocks_match_sequential(self):
        catalog = make_catalog()
        config = DesignConfig(covariates=("age", "income"), exact_match="site", mode="full")
        sequential = OptimalStratification(config).fit(catalog)
        parallel = OptimalStratification(config.replace(n_jobs=3)).fit(catalog)
        assert parallel == sequential

    def test_cancelled_before_start(self):
        catalog = make_catalog()
        config = DesignConfig(covariates=("age",), metric="absolute", exact_match="site")
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(SolveCancelled):
            OptimalStratification(config).fit(catalog, cancel=cancel)


class TestEmptyBlockThroughPipeline:

    def test_treated_only_site(self):
        df = make_site_data()
        extra = pd.DataFrame({"id": ["u999"], "z": [1], "site": ["D"], "age": [50.0], "income": [55.0]})
        catalog = make_catalog(pd.concat([df, extra], ignore_index=True))
        config = DesignConfig(covariates=("age",), metric="absolute", exact_match="site")
        with pytest.raises(EmptyBlock) as info:
            OptimalStratification(config).fit(catalog)
        assert info.value.keys == {"D": "comparison"}


class TestDesignConfig:

    def test_defaults(self):
        config = DesignConfig(covariates=["age"])
        assert config.covariates == ("age",)
        assert config.metric == "rank_mahalanobis"
        assert config.mode == "pair"
        assert config.constraints == []

    def test_constraints_order(self):
        caliper = Caliper(0.5)
        config = DesignConfig(covariates=("age",), calipers=[caliper], exact_match="site")
        assert config.constraints == [caliper, ExactMatch("site")]

    def test_replace_returns_new_config(self):
        config = DesignConfig(covariates=("age",))
        full = config.replace(mode="full", max_controls=2)
        assert full.mode == "full" and full.max_controls == 2
        assert config.mode == "pair"

    def test_frozen(self):
        config = DesignConfig(covariates=("age",))
        with pytest.raises(AttributeError):
            config.mode = "full"

    def test_replace_revalidates(self):
        with pytest.raises(ConfigurationError):
            DesignConfig(covariates=("age",)).replace(max_controls=3)

    @pytest.mark.parametrize("kwargs", [
        {"metric": "euclidean"},
        {"mode": "triplet"},
        {"backend": "simplex"},
        {"mode": "full", "min_controls": 0},
        {"mode": "full", "min_controls": 3, "max_controls": 2},
        {"mode": "pair", "max_controls": 3},
        {"metric": "absolute", "covariates": ("age", "income")},
        {"metric": "propensity", "covariates": ("age", "income")},
        {"calipers": (0.5,)},
        {"tolerance": -1.0},
        {"n_jobs": 0},
    ])
    def test_invalid(self, kwargs):
        kwargs = {"covariates": ("age",), **kwargs}
        with pytest.raises(ConfigurationError):
            DesignConfig(**kwargs)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            DesignConfig(mode="triplet")
