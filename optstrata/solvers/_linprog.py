"""
The bounded bipartite assignment posed as a linear programme.

Variables are the allowed treated→comparison pairs ``x`` plus, per treated
unit, the flow ``u`` up to its lower bound and the flow ``w`` above it. The
constraint matrix is the incidence matrix of a bipartite network, so it is
totally unimodular and a simplex vertex is already integral.

Ties are settled by a second solve over the optimal face: every variable
and comparison row whose reduced cost or dual marks it as non-optional is
fixed, and among what remains the assignment closest to pairing the k-th
treated id with the k-th comparison id is chosen.
"""
from __future__ import annotations

import logging

import numpy as np
from scipy import sparse
from scipy.optimize import linprog

logger = logging.getLogger(__name__)

_INTEGRALITY_TOL = 1e-6

# Ties are never allowed to trade away a unit of flow, which moves the
# objective by at least one.
_MAX_TIE_WINDOW = 0.5


def _rounded(x: np.ndarray) -> np.ndarray:
    chosen = np.rint(x)
    if np.max(np.abs(x - chosen), initial=0.0) > _INTEGRALITY_TOL:
        raise RuntimeError("LP backend returned a fractional solution.")
    return chosen


def solve_assignment_lp(
    cost: np.ndarray,
    lower: int,
    upper: int,
    flow_bonus: float,
    bound_bonus: float,
    tolerance: float = 0.0,
) -> np.ndarray:
    """
    Return a 0/1 array shaped like ``cost`` selecting the chosen pairs.

    The objective ``Σ (cost - flow_bonus)·x - bound_bonus·Σ u`` ranks
    designs first by how much of every lower bound is met, then by how many
    pairs are formed, then by total distance. Designs whose objective is
    within ``tolerance`` of the optimum count as tied; among them the one
    minimising ``Σ (i - j)²`` over chosen pairs (row and column positions) is
    returned.
    """
    n_t, n_c = cost.shape
    rows, cols = np.nonzero(np.isfinite(cost))
    n_x = len(rows)
    if n_x == 0:
        return np.zeros(cost.shape, dtype=int)

    n_var = n_x + 2 * n_t
    u0, w0 = n_x, n_x + n_t

    c = np.empty(n_var)
    c[:n_x] = cost[rows, cols] - flow_bonus
    c[u0:w0] = -bound_bonus
    c[w0:] = 0.0

    # u_t + w_t - Σ_c x_tc = 0
    eq_r = np.concatenate([rows, np.arange(n_t), np.arange(n_t)])
    eq_c = np.concatenate([np.arange(n_x), u0 + np.arange(n_t), w0 + np.arange(n_t)])
    eq_v = np.concatenate([-np.ones(n_x), np.ones(n_t), np.ones(n_t)])
    A_eq = sparse.csr_matrix((eq_v, (eq_r, eq_c)), shape=(n_t, n_var))

    # Σ_t x_tc <= 1
    A_ub = sparse.csr_matrix((np.ones(n_x), (cols, np.arange(n_x))), shape=(n_c, n_var))

    lo = np.zeros(n_var)
    hi = np.concatenate([
        np.ones(n_x),
        np.full(n_t, float(lower)),
        np.full(n_t, float(max(upper - lower, 0))),
    ])

    res = linprog(
        c, A_ub=A_ub, b_ub=np.ones(n_c), A_eq=A_eq, b_eq=np.zeros(n_t),
        bounds=np.column_stack([lo, hi]), method="highs-ds",
    )
    if res.status != 0:
        raise RuntimeError(f"LP backend failed: {res.message}")
    first = _rounded(res.x)

    # Each free variable or comparison row can move the objective by at
    # most ``span`` times its reduced cost, so this threshold keeps the
    # total drift within the tolerance.
    span = n_x + n_t * max(upper, 1) + n_c
    threshold = min(tolerance, _MAX_TIE_WINDOW) / span
    reduced = res.lower.marginals + res.upper.marginals
    fixed = np.abs(reduced) > threshold
    tight_rows = np.abs(res.ineqlin.marginals) > threshold

    lo2, hi2 = lo.copy(), hi.copy()
    lo2[fixed] = hi2[fixed] = first[fixed]

    rank = np.zeros(n_var)
    rank[:n_x] = (rows - cols) ** 2.0

    A_eq2 = sparse.vstack([A_eq, A_ub[tight_rows]]).tocsr()
    b_eq2 = np.concatenate([np.zeros(n_t), np.ones(int(tight_rows.sum()))])
    A_ub2 = A_ub[~tight_rows]
    res2 = linprog(
        rank,
        A_ub=A_ub2 if A_ub2.shape[0] else None,
        b_ub=np.ones(A_ub2.shape[0]) if A_ub2.shape[0] else None,
        A_eq=A_eq2, b_eq=b_eq2,
        bounds=np.column_stack([lo2, hi2]), method="highs-ds",
    )
    if res2.status != 0:
        raise RuntimeError(f"LP backend failed while settling ties: {res2.message}")
    chosen = _rounded(res2.x[:n_x])

    out = np.zeros(cost.shape, dtype=int)
    out[rows, cols] = chosen.astype(int)
    logger.debug(
        "LP assignment: %d variable(s), %d free for tie-breaking, %d pair(s) chosen",
        n_var, int((~fixed).sum()), int(out.sum()),
    )
    return out
