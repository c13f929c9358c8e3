from __future__ import annotations

import logging
import math
from collections.abc import Mapping

import numpy as np
import pandas as pd
import scipy.stats as st
from statsmodels.stats.multitest import multipletests

from ._exceptions import DegenerateStratification, EmptyCovariateSet, EmptyDesign
from .design import MatchedDesign
from .units import CATEGORICAL, UnitCatalog

logger = logging.getLogger(__name__)

WEIGHTINGS = ("harmonic", "size")

# Null-covariance eigenvalues below this share of the largest are treated as zero.
_RANK_TOL = 1e-10

_COLUMNS = [
    "treated_mean", "control_mean", "adj_diff", "std_diff",
    "std_err", "z", "p_value", "p_adjusted",
]


def unstratified(catalog: UnitCatalog) -> pd.Series:
    """Every unit in a single stratum, for assessing balance before matching."""
    return pd.Series("all", index=catalog.ids, name="stratum", dtype=object)


# ── Report ─────────────────────────────────────────────────────────────────────

class BalanceReport:
    """
    Covariate balance of a stratification, judged against re-randomisation
    of treatment within the same strata.

    ``table`` has one row per covariate (categorical covariates appear as one
    indicator row per level, e.g. ``sex[F]``) with columns:

    - ``treated_mean``, ``control_mean`` — stratum-weighted arm means
    - ``adj_diff`` — weighted within-stratum treated minus comparison mean
    - ``std_diff`` — ``adj_diff`` over the pooled pre-matching standard deviation
    - ``std_err`` — null standard deviation of ``adj_diff``
    - ``z`` — ``adj_diff / std_err``
    - ``p_value`` — two-sided normal p-value
    - ``p_adjusted`` — Holm step-down adjusted p-value

    The overall test combines all rows in a quadratic form whose null
    distribution is chi-square with ``df`` degrees of freedom.
    """

    def __init__(
        self,
        table: pd.DataFrame,
        chisquare: float,
        df: int,
        pvalue: float,
        n_strata: int,
        n_units: int,
        weighting: str = "harmonic",
    ) -> None:
        self._table = table
        self._chisquare = chisquare
        self._df = df
        self._pvalue = pvalue
        self._n_strata = n_strata
        self._n_units = n_units
        self._weighting = weighting

    @property
    def table(self) -> pd.DataFrame:
        """Per-covariate statistics (a copy)."""
        return self._table.copy()

    @property
    def covariates(self) -> list[str]:
        return self._table.index.tolist()

    @property
    def chisquare(self) -> float:
        """Overall balance statistic."""
        return self._chisquare

    @property
    def df(self) -> int:
        """Degrees of freedom of the overall statistic (rank of the null covariance)."""
        return self._df

    @property
    def pvalue(self) -> float:
        """Significance of the overall statistic."""
        return self._pvalue

    @property
    def n_strata(self) -> int:
        """Strata that contributed (those with both treated and comparison units)."""
        return self._n_strata

    @property
    def n_units(self) -> int:
        return self._n_units

    @property
    def weighting(self) -> str:
        return self._weighting

    def __getitem__(self, covariate: str) -> pd.Series:
        return self._table.loc[covariate].copy()

    def executive_summary(self) -> str:
        """Narrative reading of the balance assessment."""
        from ._explain import explain_balance
        return explain_balance(self)

    def summary(self) -> str:
        lines = [
            "",
            f"Covariate balance ({self._n_strata} strata, {self._n_units} units, "
            f"{self._weighting} weights)",
            "─" * 74,
            f"  {'covariate':<20} {'adj.diff':>10} {'std.diff':>9} {'std.err':>9} "
            f"{'z':>8} {'p (Holm)':>10}",
        ]
        for name, row in self._table.iterrows():
            lines.append(
                f"  {str(name)[:20]:<20} {row['adj_diff']:>10.4f} {row['std_diff']:>9.3f} "
                f"{row['std_err']:>9.4f} {row['z']:>8.3f} {row['p_adjusted']:>10.4f}"
            )
        lines += [
            "",
            f"  Overall: chi-square = {self._chisquare:.4f} on {self._df} df, "
            f"p-value = {self._pvalue:.4f}",
            "",
        ]
        return "\n".join(lines)

    def __eq__(self, other) -> bool:
        if not isinstance(other, BalanceReport):
            return NotImplemented

        def same(a: float, b: float) -> bool:
            return (math.isnan(a) and math.isnan(b)) or a == b

        return (
            self._table.equals(other._table)
            and same(self._chisquare, other._chisquare)
            and self._df == other._df
            and same(self._pvalue, other._pvalue)
            and self._weighting == other._weighting
        )

    def __repr__(self) -> str:
        return self.summary()


# ── Evaluator ──────────────────────────────────────────────────────────────────

def _assignment_series(design) -> pd.Series:
    if isinstance(design, MatchedDesign):
        s = pd.Series(design.assignment, dtype=object)
    elif isinstance(design, pd.Series):
        s = design.astype(object)
    elif isinstance(design, Mapping):
        s = pd.Series(dict(design), dtype=object)
    else:
        raise TypeError(
            f"Expected a MatchedDesign, Series or mapping of unit id → stratum; "
            f"got {type(design).__name__}."
        )
    return s[s.notna()]


def _design_matrix(catalog: UnitCatalog, covariates: list[str], ids: list) -> pd.DataFrame:
    """Numeric covariates as-is, categorical ones as one indicator per level."""
    schema = catalog.schema
    cols = {}
    for c in covariates:
        if schema[c] == CATEGORICAL:
            all_values = catalog.values(c)
            levels = sorted(all_values.unique(), key=str)
            sub = all_values.loc[ids]
            for level in levels:
                cols[f"{c}[{level}]"] = (sub == level).to_numpy(dtype=float)
        else:
            cols[c] = catalog.values(c, ids).to_numpy(dtype=float)
    return pd.DataFrame(cols, index=ids)


class StrataEvaluator:
    """
    Assess covariate balance within strata.

    For each stratum ``s`` with ``n_T`` treated and ``n_C`` comparison units
    the treated-minus-comparison mean difference is formed, and the
    differences are combined with weights ``2·n_T·n_C/(n_T+n_C)``
    (``weighting="harmonic"``, the precision weights of a stratified
    comparison) or ``n_T+n_C`` (``weighting="size"``). The null distribution
    treats each stratum as a finite population in which ``n_T`` units were
    drawn at random to be treated, which gives the closed-form variance
    ``S²_s · n_s / (n_T·n_C)`` of each stratum's difference.

    Strata lacking one of the arms carry no information and are skipped.

    Example::

        report = StrataEvaluator(["age", "sex"]).evaluate(design, catalog)
        print(report.summary())
    """

    def __init__(self, covariates=None, weighting: str = "harmonic") -> None:
        if weighting not in WEIGHTINGS:
            raise ValueError(f"Unknown weighting '{weighting}'. Choose from {list(WEIGHTINGS)}.")
        self._covariates = None if covariates is None else list(covariates)
        self._weighting = weighting

    def _weight(self, n_t: int, n_c: int) -> float:
        if self._weighting == "size":
            return float(n_t + n_c)
        return 2.0 * n_t * n_c / (n_t + n_c)

    def evaluate(self, design, catalog: UnitCatalog) -> BalanceReport:
        """
        Parameters
        ----------
        design : MatchedDesign, pd.Series or mapping
            The stratification. A Series or mapping sends unit id → stratum
            label; missing / ``None`` labels mark excluded units.
        catalog : UnitCatalog
            Source of treatment labels and covariate values.

        Raises
        ------
        ``EmptyDesign``
            If no unit is assigned to a stratum.
        ``DegenerateStratification``
            If no stratum holds both treated and comparison units.
        """
        strata = _assignment_series(design)
        if strata.empty:
            raise EmptyDesign("The design assigns no units to any stratum.")

        unknown = [i for i in strata.index if i not in catalog]
        if unknown:
            raise ValueError(f"Design refers to unit id(s) not in the catalog: {unknown}")

        covariates = catalog.covariates if self._covariates is None else self._covariates
        if not covariates:
            raise EmptyCovariateSet("No covariates to assess balance on.")
        missing = [c for c in covariates if c not in catalog.schema]
        if missing:
            raise ValueError(f"Covariate(s) {missing} are not in the catalog.")

        ids = strata.index.tolist()
        X = _design_matrix(catalog, covariates, ids)
        z = catalog.is_treated(ids)
        values = X.to_numpy()
        p = values.shape[1]

        labels = strata.to_numpy()
        order = list(dict.fromkeys(labels))

        sum_w = 0.0
        sum_wd = np.zeros(p)
        sum_wt = np.zeros(p)
        sum_wc = np.zeros(p)
        cov = np.zeros((p, p))
        informative = 0
        for label in order:
            in_s = labels == label
            n_t = int(z[in_s].sum())
            n_c = int(in_s.sum()) - n_t
            if n_t == 0 or n_c == 0:
                continue
            informative += 1
            xs = values[in_s]
            zs = z[in_s]
            w = self._weight(n_t, n_c)
            mean_t = xs[zs].mean(axis=0)
            mean_c = xs[~zs].mean(axis=0)
            s2 = np.atleast_2d(np.cov(xs, rowvar=False, ddof=1))
            sum_w += w
            sum_wd += w * (mean_t - mean_c)
            sum_wt += w * mean_t
            sum_wc += w * mean_c
            cov += (w * w) * (n_t + n_c) / (n_t * n_c) * s2

        if informative == 0:
            raise DegenerateStratification(order)

        adj_diff = sum_wd / sum_w
        cov = cov / (sum_w * sum_w)
        std_err = np.sqrt(np.clip(np.diag(cov), 0.0, None))
        with np.errstate(divide="ignore", invalid="ignore"):
            zstat = np.where(std_err > 0, adj_diff / std_err, np.nan)
        pvals = 2.0 * st.norm.sf(np.abs(zstat))

        p_adj = np.full(p, np.nan)
        ok = np.isfinite(pvals)
        if ok.any():
            p_adj[ok] = multipletests(pvals[ok], method="holm")[1]

        pooled_sd = self._pooled_sd(catalog, covariates, X.columns)
        with np.errstate(divide="ignore", invalid="ignore"):
            std_diff = np.where(pooled_sd > 0, adj_diff / pooled_sd, np.nan)

        table = pd.DataFrame(
            {
                "treated_mean": sum_wt / sum_w,
                "control_mean": sum_wc / sum_w,
                "adj_diff": adj_diff,
                "std_diff": std_diff,
                "std_err": std_err,
                "z": zstat,
                "p_value": pvals,
                "p_adjusted": p_adj,
            },
            index=X.columns,
            columns=_COLUMNS,
        )

        chisquare, df, overall_p = self._overall(adj_diff, cov)
        logger.info(
            "balance over %d covariate(s), %d strata: chi-square %.4f on %d df",
            p, informative, chisquare, df,
        )
        return BalanceReport(
            table, chisquare, df, overall_p,
            n_strata=informative, n_units=len(ids), weighting=self._weighting,
        )

    @staticmethod
    def _pooled_sd(catalog: UnitCatalog, covariates: list[str], columns) -> np.ndarray:
        """Pooled standard deviation of each column over all catalogued units."""
        full = _design_matrix(catalog, covariates, catalog.ids).loc[:, list(columns)]
        z = catalog.is_treated()
        vals = full.to_numpy()
        var_t = vals[z].var(axis=0, ddof=1) if z.sum() > 1 else np.zeros(vals.shape[1])
        var_c = vals[~z].var(axis=0, ddof=1) if (~z).sum() > 1 else np.zeros(vals.shape[1])
        return np.sqrt((var_t + var_c) / 2.0)

    @staticmethod
    def _overall(adj_diff: np.ndarray, cov: np.ndarray) -> tuple[float, int, float]:
        scale = float(np.max(np.abs(cov))) if cov.size else 0.0
        if scale == 0.0:
            return float("nan"), 0, float("nan")
        eigval, eigvec = np.linalg.eigh(cov / scale)
        keep = eigval > _RANK_TOL * eigval.max()
        proj = eigvec[:, keep].T @ adj_diff
        chisquare = float(np.sum(proj * proj / eigval[keep]) / scale)
        rank = int(keep.sum())
        return chisquare, rank, float(st.chi2.sf(chisquare, rank))

    def __repr__(self) -> str:
        return f"StrataEvaluator(covariates={self._covariates}, weighting={self._weighting!r})"
