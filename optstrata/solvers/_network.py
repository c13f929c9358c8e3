"""
Minimum-cost flow by successive shortest augmenting paths.

Reduced costs are kept non-negative with node potentials, so each
shortest-path search is a Dijkstra run. Initial potentials come from a
Bellman-Ford pass, which allows negative costs on the original edges as long
as the network has no negative cycle (the bipartite matching networks built
by the solver are acyclic).
"""
from __future__ import annotations

import heapq
import logging
import math

logger = logging.getLogger(__name__)

INF = math.inf


class FlowNetwork:
    """
    Directed network with integer capacities and real costs.

    Edges are stored in paired arrays: edge ``e`` and its residual reverse
    ``e ^ 1``. Adjacency lists keep insertion order, which (together with the
    heap ordering on node index) makes every search deterministic.
    """

    def __init__(self, n_nodes: int) -> None:
        self._n = n_nodes
        self._adj: list[list[int]] = [[] for _ in range(n_nodes)]
        self._to: list[int] = []
        self._cap: list[int] = []
        self._cost: list[float] = []
        self._orig: list[int] = []

    @property
    def n_nodes(self) -> int:
        return self._n

    @property
    def n_edges(self) -> int:
        return len(self._to) // 2

    def add_edge(self, u: int, v: int, cap: int, cost: float) -> int:
        """Add ``u → v`` and return its id (for ``flow()``)."""
        if cap < 0:
            raise ValueError(f"Edge capacity must be >= 0; got {cap}.")
        e = len(self._to)
        self._to += [v, u]
        self._cap += [cap, 0]
        self._cost += [cost, -cost]
        self._orig += [cap, 0]
        self._adj[u].append(e)
        self._adj[v].append(e + 1)
        return e

    def flow(self, edge: int) -> int:
        """Units of flow currently on ``edge``."""
        return self._orig[edge] - self._cap[edge]

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _initial_potentials(self, source: int) -> list[float]:
        """Bellman-Ford shortest distances from ``source`` over edges with capacity."""
        dist = [INF] * self._n
        dist[source] = 0.0
        for _ in range(self._n - 1):
            changed = False
            for u in range(self._n):
                du = dist[u]
                if du == INF:
                    continue
                for e in self._adj[u]:
                    if self._cap[e] > 0:
                        v = self._to[e]
                        nd = du + self._cost[e]
                        if nd < dist[v]:
                            dist[v] = nd
                            changed = True
            if not changed:
                break
        return [0.0 if d == INF else d for d in dist]

    def _dijkstra(self, source: int, sink: int, pot: list[float], tol: float):
        dist = [INF] * self._n
        prev = [-1] * self._n
        done = [False] * self._n
        dist[source] = 0.0
        heap = [(0.0, source)]
        while heap:
            d, u = heapq.heappop(heap)
            if done[u]:
                continue
            done[u] = True
            if u == sink:
                break
            pu = pot[u]
            for e in self._adj[u]:
                if self._cap[e] <= 0:
                    continue
                v = self._to[e]
                if done[v]:
                    continue
                rc = self._cost[e] + pu - pot[v]
                if -tol < rc < 0.0:
                    # rounding error in the potentials
                    rc = 0.0
                nd = d + rc
                if nd < dist[v]:
                    dist[v] = nd
                    prev[v] = e
                    heapq.heappush(heap, (nd, v))
        return dist, prev

    # ── Solve ─────────────────────────────────────────────────────────────────

    def min_cost_flow(
        self,
        source: int,
        sink: int,
        max_flow: int | None = None,
        tol: float = 0.0,
    ) -> tuple[int, float]:
        """
        Push flow from ``source`` to ``sink`` along successive cheapest paths.

        Stops at ``max_flow`` units or when no augmenting path is left, so
        the result is a minimum-cost flow of maximum value (up to
        ``max_flow``). Path lengths are compared exactly; among equally short
        paths the one found first wins. ``tol`` only absorbs rounding error:
        reduced costs in ``(-tol, 0)`` are taken as zero.

        Returns ``(flow_value, total_cost)``.
        """
        pot = self._initial_potentials(source)
        limit = INF if max_flow is None else max_flow
        total_flow, total_cost, rounds = 0, 0.0, 0

        while total_flow < limit:
            dist, prev = self._dijkstra(source, sink, pot, tol)
            bound = dist[sink]
            if bound == INF:
                break
            for v in range(self._n):
                pot[v] += min(dist[v], bound)

            push = limit - total_flow
            v = sink
            while v != source:
                e = prev[v]
                push = min(push, self._cap[e])
                v = self._to[e ^ 1]

            path_cost = 0.0
            v = sink
            while v != source:
                e = prev[v]
                self._cap[e] -= push
                self._cap[e ^ 1] += push
                path_cost += self._cost[e]
                v = self._to[e ^ 1]

            total_flow += push
            total_cost += push * path_cost
            rounds += 1

        logger.debug(
            "min-cost flow: %d node(s), %d edge(s), %d augmentation(s), value %d",
            self._n, self.n_edges, rounds, total_flow,
        )
        return total_flow, total_cost
