from __future__ import annotations

import logging
from typing import Iterator

import numpy as np
import pandas as pd
import statsmodels.formula.api as smf
from scipy.stats import rankdata

from ._exceptions import DegenerateScore, EmptyCovariateSet, SingularCovariance
from .units import CATEGORICAL, UnitCatalog

logger = logging.getLogger(__name__)

FORBIDDEN = np.inf

METRICS = ("absolute", "rank_mahalanobis", "propensity")


# ── Distance matrix ────────────────────────────────────────────────────────────

class DistanceMatrix:
    """
    Treated × comparison distances.

    Rows are treated units and columns are comparison units, both in the
    order given at construction. A forbidden pair carries ``FORBIDDEN``
    (``numpy.inf``). The matrix is read-only: every operation that changes
    entries returns a new ``DistanceMatrix``.
    """

    def __init__(self, treated_ids, control_ids, values) -> None:
        values = np.array(values, dtype=float, copy=True)
        treated_ids = tuple(treated_ids)
        control_ids = tuple(control_ids)
        if values.shape != (len(treated_ids), len(control_ids)):
            raise ValueError(
                f"Distance values have shape {values.shape}; expected "
                f"({len(treated_ids)}, {len(control_ids)})."
            )
        if np.isnan(values).any():
            raise ValueError("Distance values must not contain NaN.")
        if (values < 0).any():
            raise ValueError("Distances must be non-negative.")
        values.setflags(write=False)
        self._treated_ids = treated_ids
        self._control_ids = control_ids
        self._values = values
        self._row = {t: i for i, t in enumerate(treated_ids)}
        self._col = {c: j for j, c in enumerate(control_ids)}

    @property
    def treated_ids(self) -> tuple:
        return self._treated_ids

    @property
    def control_ids(self) -> tuple:
        return self._control_ids

    @property
    def values(self) -> np.ndarray:
        """Read-only array of shape ``(n_treated, n_comparison)``."""
        return self._values

    @property
    def shape(self) -> tuple[int, int]:
        return self._values.shape

    @property
    def n_forbidden(self) -> int:
        return int(np.isinf(self._values).sum())

    def __getitem__(self, pair) -> float:
        t, c = pair
        return float(self._values[self._row[t], self._col[c]])

    def is_forbidden(self, treated_id, control_id) -> bool:
        return bool(np.isinf(self[treated_id, control_id]))

    def finite_pairs(self) -> Iterator[tuple]:
        """Yield ``(treated_id, control_id, distance)`` for every allowed pair."""
        rows, cols = np.nonzero(np.isfinite(self._values))
        for i, j in zip(rows, cols):
            yield self._treated_ids[i], self._control_ids[j], float(self._values[i, j])

    def forbid(self, mask: np.ndarray) -> DistanceMatrix:
        """New matrix with every entry where ``mask`` is true forbidden."""
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != self.shape:
            raise ValueError(f"Mask shape {mask.shape} does not match {self.shape}.")
        return DistanceMatrix(
            self._treated_ids, self._control_ids,
            np.where(mask, FORBIDDEN, self._values),
        )

    def submatrix(self, treated_ids, control_ids) -> DistanceMatrix:
        """New matrix restricted to the given ids, in the given order."""
        rows = [self._row[t] for t in treated_ids]
        cols = [self._col[c] for c in control_ids]
        return DistanceMatrix(treated_ids, control_ids, self._values[np.ix_(rows, cols)])

    def aligned(self, other: DistanceMatrix) -> np.ndarray:
        """
        Entries of ``self`` laid out on ``other``'s rows and columns.

        Pairs that ``self`` does not cover are treated as forbidden.
        """
        out = np.full(other.shape, FORBIDDEN)
        rows = [(i, self._row[t]) for i, t in enumerate(other.treated_ids) if t in self._row]
        cols = [(j, self._col[c]) for j, c in enumerate(other.control_ids) if c in self._col]
        if rows and cols:
            oi, si = zip(*rows)
            oj, sj = zip(*cols)
            out[np.ix_(oi, oj)] = self._values[np.ix_(si, sj)]
        return out

    def to_frame(self) -> pd.DataFrame:
        """Dense dataframe: treated ids on the index, comparison ids as columns."""
        return pd.DataFrame(
            self._values, index=list(self._treated_ids), columns=list(self._control_ids),
        )

    def __eq__(self, other) -> bool:
        if not isinstance(other, DistanceMatrix):
            return NotImplemented
        return (
            self._treated_ids == other._treated_ids
            and self._control_ids == other._control_ids
            and np.array_equal(self._values, other._values)
        )

    def __repr__(self) -> str:
        n_t, n_c = self.shape
        return f"DistanceMatrix({n_t} treated × {n_c} comparison, {self.n_forbidden} forbidden)"


# ── Metrics ────────────────────────────────────────────────────────────────────

def _numeric_block(catalog: UnitCatalog, covariates: list[str]) -> np.ndarray:
    if not covariates:
        raise EmptyCovariateSet("At least one covariate is required to build a distance.")
    schema = catalog.schema
    unknown = [c for c in covariates if c not in schema]
    if unknown:
        raise ValueError(f"Covariate(s) {unknown} are not in the catalog.")
    categorical = [c for c in covariates if schema[c] == CATEGORICAL]
    if categorical:
        raise ValueError(
            f"Covariate(s) {categorical} are categorical; use them for exact "
            f"matching rather than as distance inputs."
        )
    return np.column_stack([catalog.values(c).to_numpy(dtype=float) for c in covariates])


def absolute_distance(catalog: UnitCatalog, covariate: str) -> DistanceMatrix:
    """``|x_t - x_c|`` on a single numeric covariate."""
    x = _numeric_block(catalog, [covariate] if covariate else [])[:, 0]
    treated = catalog.is_treated()
    d = np.abs(x[treated][:, None] - x[~treated][None, :])
    return DistanceMatrix(catalog.treated_ids, catalog.control_ids, d)


def rank_mahalanobis_distance(catalog: UnitCatalog, covariates: list[str]) -> DistanceMatrix:
    """
    Mahalanobis distance on rank-transformed covariates.

    Each covariate is replaced by its mid-ranks over all units. The rank
    covariance is rescaled so that every covariate has the variance of
    untied ranks ``1..n``; ties therefore do not inflate a covariate's
    weight. Distances are the quadratic-form distances under the inverse of
    that covariance.
    """
    covariates = list(covariates)
    X = _numeric_block(catalog, covariates)
    n = X.shape[0]
    if n < 2:
        raise SingularCovariance(covariates, "At least two units are needed for a rank covariance.")

    ranks = np.column_stack([rankdata(X[:, k]) for k in range(X.shape[1])])
    cv = np.atleast_2d(np.cov(ranks, rowvar=False))
    var = np.diag(cv)

    constant = [c for c, v in zip(covariates, var) if v <= 0]
    if constant:
        raise SingularCovariance(
            constant, f"Covariate(s) {constant} are constant; their rank variance is zero.",
        )

    vuntied = np.var(np.arange(1, n + 1), ddof=1)
    rat = np.sqrt(vuntied / var)
    cv = cv * np.outer(rat, rat)

    if np.linalg.matrix_rank(cv) < cv.shape[0]:
        raise SingularCovariance(covariates)
    try:
        icov = np.linalg.inv(cv)
    except np.linalg.LinAlgError as exc:
        raise SingularCovariance(covariates) from exc

    treated = catalog.is_treated()
    rt, rc = ranks[treated], ranks[~treated]
    qt = np.einsum("ij,jk,ik->i", rt, icov, rt)
    qc = np.einsum("ij,jk,ik->i", rc, icov, rc)
    cross = rt @ icov @ rc.T
    d2 = qt[:, None] + qc[None, :] - 2.0 * cross
    d = np.sqrt(np.clip(d2, 0.0, None))
    logger.debug("rank-Mahalanobis distance over %s: shape %s", covariates, d.shape)
    return DistanceMatrix(catalog.treated_ids, catalog.control_ids, d)


def propensity_distance(catalog: UnitCatalog, score) -> DistanceMatrix:
    """
    ``|s_t - s_c|`` divided by the pooled within-arm standard deviation of
    the score.

    ``score`` is either a numeric column of the catalog or a per-unit array
    (or Series indexed by unit id) produced outside the catalog, e.g. by
    ``propensity_scores``.
    """
    if isinstance(score, str):
        name = score
        s = _numeric_block(catalog, [score])[:, 0]
    elif isinstance(score, pd.Series):
        name = score.name or "score"
        missing = [i for i in catalog.ids if i not in score.index]
        if missing:
            raise ValueError(f"Score is missing unit id(s): {missing}")
        s = score.loc[catalog.ids].to_numpy(dtype=float)
    else:
        name = "score"
        s = np.asarray(score, dtype=float)
        if s.shape != (len(catalog),):
            raise ValueError(f"Score has shape {s.shape}; expected ({len(catalog)},).")
    if not np.isfinite(s).all():
        raise ValueError(f"Score '{name}' contains missing or infinite values.")

    treated = catalog.is_treated()
    st, sc = s[treated], s[~treated]
    n_t, n_c = len(st), len(sc)
    if n_t + n_c <= 2:
        raise DegenerateScore(
            name,
            f"Propensity score '{name}' needs at least three units to estimate a "
            f"pooled standard deviation; the catalog has {n_t + n_c}.",
        )
    ss_t = np.var(st, ddof=1) * (n_t - 1) if n_t > 1 else 0.0
    ss_c = np.var(sc, ddof=1) * (n_c - 1) if n_c > 1 else 0.0
    pooled_sd = np.sqrt((ss_t + ss_c) / (n_t + n_c - 2))
    if not pooled_sd > 0:
        raise DegenerateScore(name)

    d = np.abs(st[:, None] - sc[None, :]) / pooled_sd
    return DistanceMatrix(catalog.treated_ids, catalog.control_ids, d)


def propensity_scores(catalog: UnitCatalog, covariates: list[str]) -> pd.Series:
    """
    Fit a logistic regression of treatment on ``covariates`` and return the
    linear predictor (log-odds) for every unit, indexed by unit id.

    A convenience for producing the score input to ``propensity_distance``;
    any externally fitted score can be used instead.
    """
    frame = catalog.frame().reset_index(drop=True)
    T = catalog.treatment
    frame[T] = frame[T].astype(float)
    rhs = " + ".join(
        f"C({c})" if catalog.schema[c] == CATEGORICAL else c for c in sorted(covariates)
    ) or "1"
    fit = smf.logit(f"{T} ~ {rhs}", data=frame).fit(disp=0)
    logit = np.asarray(fit.fittedvalues)
    return pd.Series(logit, index=catalog.ids, name="propensity")


# ── Builder ────────────────────────────────────────────────────────────────────

class DistanceMatrixBuilder:
    """
    Stateless factory for one of the three interchangeable metrics.

    Example::

        base = DistanceMatrixBuilder("rank_mahalanobis", ["age", "income"]).build(catalog)
        ps   = DistanceMatrixBuilder("propensity", score="pscore").build(catalog)
    """

    def __init__(self, metric: str, covariates=(), score=None) -> None:
        if metric not in METRICS:
            raise ValueError(f"Unknown metric '{metric}'. Choose from {list(METRICS)}.")
        self._metric = metric
        self._covariates = list(covariates)
        self._score = score

    def build(self, catalog: UnitCatalog) -> DistanceMatrix:
        if self._metric == "absolute":
            if len(self._covariates) > 1:
                raise ValueError(
                    f"The absolute metric uses a single covariate; got {self._covariates}."
                )
            return absolute_distance(catalog, self._covariates[0] if self._covariates else "")
        if self._metric == "rank_mahalanobis":
            return rank_mahalanobis_distance(catalog, self._covariates)
        score = self._score
        if score is None:
            if len(self._covariates) != 1:
                raise ValueError(
                    "The propensity metric needs a score column or array "
                    "(or exactly one covariate naming the score)."
                )
            score = self._covariates[0]
        return propensity_distance(catalog, score)

    def __repr__(self) -> str:
        return f"DistanceMatrixBuilder({self._metric!r}, covariates={self._covariates})"
