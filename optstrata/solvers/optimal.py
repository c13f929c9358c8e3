from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import numpy as np

from .._exceptions import ConfigurationError, Infeasible, SolveCancelled
from ..constraints import Block
from ..design import MatchedDesign, Stratum
from ..distance import DistanceMatrix
from ._linprog import solve_assignment_lp
from ._network import FlowNetwork

logger = logging.getLogger(__name__)

# Allowed pairs above which the pure-Python flow search gets slow.
_LARGE_FLOW_BLOCK = 20_000


def _id_order(ids) -> list:
    """Ids sorted for deterministic tie-breaking; mixed types fall back to ``repr``."""
    try:
        return sorted(ids)
    except TypeError:
        return sorted(ids, key=repr)


@dataclass
class _BlockSolution:
    key: object
    groups: list = field(default_factory=list)
    distances: list = field(default_factory=list)
    excluded: list = field(default_factory=list)
    unsatisfied: list = field(default_factory=list)


class OptimalMatchSolver:
    """
    Optimal pair or full matching as a minimum-cost flow.

    The network has a source, one node per treated unit, one node per
    comparison unit, and a sink. Source → treated edges carry the
    per-stratum bounds on comparisons, treated → comparison edges (one per
    allowed pair) cost the pair's distance, and comparison → sink edges let
    each comparison unit be used once. Among flows of maximum value that
    meet as many lower bounds as possible, the cheapest is chosen; it is
    integral, so it reads directly as a stratum assignment.

    - **Pair matching** (``mode="pair"``): strata of exactly one treated and
      one comparison unit; surplus comparison units are excluded.
    - **Full matching** (``mode="full"``): strata of one treated unit and
      between ``min_controls`` and ``max_controls`` comparison units; every
      comparison unit that can be placed is placed.

    Ties between equally cheap designs are broken by unit id, so identical
    inputs always give an identical design. The flow backend takes the
    first cheapest augmenting path in id order; the linprog backend picks,
    among designs within ``tolerance`` of the optimum, the one pairing ids
    of closest rank. Both backends reach the same total distance, but tied
    designs may differ between them.

    The flow backend is pure Python and suits blocks of up to about twenty
    thousand allowed pairs; for larger blocks use ``backend="linprog"``.

    Example::

        design = OptimalMatchSolver(mode="full", max_controls=3).solve(blocks)
    """

    def __init__(
        self,
        mode: str = "pair",
        min_controls: int = 1,
        max_controls: int | None = None,
        allow_exclusion: bool = False,
        tolerance: float = 1e-9,
        backend: str = "flow",
        n_jobs: int = 1,
    ) -> None:
        if mode not in ("pair", "full"):
            raise ConfigurationError(f"Unknown mode '{mode}'. Choose from ['pair', 'full'].")
        if backend not in ("flow", "linprog"):
            raise ConfigurationError(f"Unknown backend '{backend}'. Choose from ['flow', 'linprog'].")
        if mode == "pair":
            min_controls, max_controls = 1, 1
        if min_controls < 1 or (max_controls is not None and max_controls < min_controls):
            raise ConfigurationError(
                f"Invalid comparison bounds [{min_controls}, {max_controls}] per stratum."
            )
        self._mode = mode
        self._min = min_controls
        self._max = max_controls
        self._allow_exclusion = allow_exclusion
        self._tol = tolerance
        self._backend = backend
        self._n_jobs = n_jobs

    @classmethod
    def from_config(cls, config) -> OptimalMatchSolver:
        return cls(
            mode=config.mode,
            min_controls=config.min_controls,
            max_controls=config.max_controls,
            allow_exclusion=config.allow_exclusion,
            tolerance=config.tolerance,
            backend=config.backend,
            n_jobs=config.n_jobs,
        )

    # ── Per-block solve ───────────────────────────────────────────────────────

    def _bounds(self, n_controls: int) -> tuple[int, int]:
        upper = n_controls if self._max is None else min(self._max, n_controls)
        return self._min, max(upper, self._min)

    def _assign_flow(self, cost: np.ndarray, lower: int, upper: int) -> np.ndarray:
        n_t, n_c = cost.shape
        finite = np.isfinite(cost)
        max_d = float(cost[finite].max()) if finite.any() else 0.0
        # Lower-bound flow is worth more than any difference in total distance.
        bonus = 0.0 if upper == lower == 1 else n_c * max_d + 1.0

        source, sink = 0, n_t + n_c + 1
        net = FlowNetwork(n_t + n_c + 2)
        for i in range(n_t):
            net.add_edge(source, 1 + i, lower, -bonus)
            if upper > lower:
                net.add_edge(source, 1 + i, upper - lower, 0.0)
        pair_edges = []
        for i in range(n_t):
            for j in np.flatnonzero(finite[i]):
                e = net.add_edge(1 + i, 1 + n_t + j, 1, float(cost[i, j]))
                pair_edges.append((e, i, j))
        for j in range(n_c):
            net.add_edge(1 + n_t + j, sink, 1, 0.0)

        net.min_cost_flow(source, sink, tol=self._tol)

        chosen = np.zeros(cost.shape, dtype=int)
        for e, i, j in pair_edges:
            if net.flow(e):
                chosen[i, j] = 1
        return chosen

    def _assign_lp(self, cost: np.ndarray, lower: int, upper: int) -> np.ndarray:
        n_c = cost.shape[1]
        finite = np.isfinite(cost)
        max_d = float(cost[finite].max()) if finite.any() else 0.0
        flow_bonus = n_c * max_d + 1.0
        return solve_assignment_lp(
            cost, lower, upper,
            flow_bonus=flow_bonus,
            bound_bonus=(n_c + 1) * flow_bonus,
            tolerance=self._tol,
        )

    def _solve_block(self, block: Block) -> _BlockSolution:
        matrix = block.distance
        treated = _id_order(matrix.treated_ids)
        controls = _id_order(matrix.control_ids)
        cost = matrix.submatrix(treated, controls).values
        lower, upper = self._bounds(len(controls))
        assign = self._assign_lp if self._backend == "linprog" else self._assign_flow
        n_pairs = int(np.isfinite(cost).sum())
        if self._backend == "flow" and n_pairs > _LARGE_FLOW_BLOCK:
            logger.info(
                "block %r has %d allowed pairs; backend='linprog' solves blocks this large much faster",
                block.key, n_pairs,
            )

        solution = _BlockSolution(block.key)
        feasible = np.isfinite(cost).sum(axis=1)
        active = list(range(len(treated)))
        chosen = np.zeros((0, len(controls)), dtype=int)
        while active:
            chosen = assign(cost[active], lower, upper)
            counts = chosen.sum(axis=1)
            short = [(int(counts[k]), active[k]) for k in np.flatnonzero(counts < lower)]
            if not short:
                break
            if not self._allow_exclusion:
                solution.unsatisfied = [treated[i] for _, i in short]
                return solution
            # A maximum matching leaves out exactly the units pair matching must
            # drop. With larger lower bounds, drop units that can never be
            # satisfied, else only the most deficient one, and re-solve.
            hopeless = [i for _, i in short if feasible[i] < lower]
            if upper == lower == 1:
                dropped = {i for _, i in short}
            elif hopeless:
                dropped = set(hopeless)
            else:
                dropped = {min(short)[1]}
            solution.excluded += [treated[i] for i in active if i in dropped]
            active = [i for i in active if i not in dropped]
            chosen = np.zeros((0, len(controls)), dtype=int)

        used = set()
        for row, i in enumerate(active):
            js = np.flatnonzero(chosen[row])
            used.update(js.tolist())
            solution.groups.append((treated[i], [controls[j] for j in js]))
            solution.distances.append(float(sum(cost[i, j] for j in js)))
        solution.excluded += [c for j, c in enumerate(controls) if j not in used]

        logger.debug(
            "block %r: %d treated × %d comparison → %d strata, %d excluded",
            block.key, len(treated), len(controls), len(solution.groups), len(solution.excluded),
        )
        return solution

    # ── Solve ─────────────────────────────────────────────────────────────────

    def _run_blocks(self, blocks: list[Block], cancel: threading.Event | None) -> list[_BlockSolution]:
        def guarded(block: Block):
            if cancel is not None and cancel.is_set():
                return None
            return self._solve_block(block)

        if self._n_jobs > 1 and len(blocks) > 1:
            with ThreadPoolExecutor(max_workers=self._n_jobs) as pool:
                results = list(pool.map(guarded, blocks))
        else:
            results = []
            for block in blocks:
                result = guarded(block)
                if result is None:
                    break
                results.append(result)

        if len(results) < len(blocks) or any(r is None for r in results):
            done = [r.key for r in results if r is not None]
            raise SolveCancelled(done)
        return results

    def solve(self, problem, cancel: threading.Event | None = None) -> MatchedDesign:
        """
        Solve every block and merge the results into one ``MatchedDesign``.

        Parameters
        ----------
        problem : DistanceMatrix or list[Block]
            A constrained distance matrix, or the blocks produced by
            ``ConstraintApplier.partition``.
        cancel : threading.Event, optional
            When set, blocks not yet started are abandoned and
            ``SolveCancelled`` is raised.

        Raises
        ------
        ``Infeasible``
            If some treated unit cannot be given a stratum within the bounds
            and ``allow_exclusion`` is off. Lists every such unit across all
            blocks.
        """
        if isinstance(problem, DistanceMatrix):
            blocks = [Block(None, problem)]
        else:
            blocks = list(problem)

        results = self._run_blocks(blocks, cancel)

        unsatisfied = [(r.key, unit_id) for r in results for unit_id in r.unsatisfied]
        if unsatisfied:
            reason = (
                "Pair matching needs a distinct feasible comparison unit for each."
                if self._mode == "pair" else
                f"Each needs at least {self._min} feasible comparison unit(s)."
            )
            raise Infeasible(
                [u for _, u in unsatisfied],
                sorted({k for k, _ in unsatisfied}, key=repr),
                reason,
            )

        qualified = len(blocks) > 1 or blocks[0].key is not None
        strata, excluded = [], []
        for result in results:
            for k, ((t, cs), dist) in enumerate(zip(result.groups, result.distances), start=1):
                sid = f"{result.key}.{k}" if qualified else str(k)
                strata.append(Stratum(sid, (t,), tuple(cs), result.key, dist))
            excluded += result.excluded

        design = MatchedDesign(strata, excluded, mode=self._mode)
        treated_ids = {t for block in blocks for t in block.distance.treated_ids}
        n_treated_excluded = sum(1 for unit_id in design.excluded if unit_id in treated_ids)
        if n_treated_excluded:
            logger.warning(
                "%d treated unit(s) excluded: no feasible stratum within the bounds",
                n_treated_excluded,
            )
        logger.info(
            "%s matching: %d strata, %d excluded, total distance %.6g",
            self._mode, design.n_strata, len(design.excluded), design.objective,
        )
        return design

    def __repr__(self) -> str:
        return (
            f"OptimalMatchSolver(mode={self._mode!r}, controls=[{self._min}, {self._max}], "
            f"backend={self._backend!r})"
        )
