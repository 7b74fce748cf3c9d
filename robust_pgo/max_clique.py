"""Max-clique selection over the consistency graph.

Three interchangeable strategies share one contract,
``select_inliers(graph) -> frozenset[int]``, and differ in optimality vs.
latency. All are deterministic for identical graphs: ties are broken by
ascending loop-closure id.
"""
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Protocol, Set
import logging
import time

import numpy as np

from .consistency_graph import ConsistencyGraph
from .params import MaxCliqueMethod, parse_max_clique_method

logger = logging.getLogger("robust_pgo.max_clique")


class InlierSelector(Protocol):
    name: str

    def select_inliers(self, graph: ConsistencyGraph) -> FrozenSet[int]:
        ...


def core_numbers(adj: Dict[int, Set[int]]) -> Dict[int, int]:
    """k-core number of every vertex (peeling, lowest degree then lowest id first)."""
    degree = {v: len(adj[v]) for v in adj}
    remaining = set(adj)
    core: Dict[int, int] = {}
    k = 0
    while remaining:
        v = min(remaining, key=lambda u: (degree[u], u))
        k = max(k, degree[v])
        core[v] = k
        remaining.remove(v)
        for u in adj[v]:
            if u in remaining:
                degree[u] -= 1
    return core


@dataclass
class ExactMaxClique:
    """Branch-and-bound maximum clique (Carraghan-Pardalos with core pruning).

    Vertices are explored in ascending id order and the incumbent is only
    replaced by a strictly larger clique, so the result is the
    lexicographically smallest maximum clique. Exponential in the worst case;
    ``time_limit`` (seconds) returns the incumbent once exceeded.
    """
    time_limit: Optional[float] = None
    name: str = "exact"

    def __post_init__(self):
        self.timed_out = False

    def select_inliers(self, graph: ConsistencyGraph) -> FrozenSet[int]:
        self.timed_out = False
        adj = graph.adjacency()
        if not adj:
            return frozenset()
        core = core_numbers(adj)
        deadline = None if self.time_limit is None else time.perf_counter() + self.time_limit
        best: List[int] = []
        # Explicit stack of [clique, candidates, next index]; recursion depth would
        # otherwise grow with the clique size.
        stack = [[[], sorted(adj), 0]]
        steps = 0
        while stack:
            steps += 1
            if deadline is not None and steps % 256 == 0 and time.perf_counter() > deadline:
                self.timed_out = True
                logger.warning("Exact max clique hit its %.3fs budget; returning best clique so far (%d)",
                               self.time_limit, len(best))
                break
            frame = stack[-1]
            clique, cand, i = frame
            if not cand:
                if len(clique) > len(best):
                    best = list(clique)
                stack.pop()
                continue
            if i >= len(cand) or len(clique) + len(cand) - i <= len(best):
                stack.pop()
                continue
            v = cand[i]
            frame[2] = i + 1
            if core[v] + 1 <= len(best):
                continue
            adj_v = adj[v]
            stack.append([clique + [v], [u for u in cand[i + 1:] if u in adj_v], 0])
        return frozenset(best)


@dataclass
class HeuristicMaxClique:
    """Greedy maximal clique seeded from every vertex in core-number order (PMC heuristic)."""
    name: str = "heuristic"

    def select_inliers(self, graph: ConsistencyGraph) -> FrozenSet[int]:
        adj = graph.adjacency()
        if not adj:
            return frozenset()
        core = core_numbers(adj)
        order = sorted(adj, key=lambda v: (-core[v], v))
        best: List[int] = []
        for v in order:
            if core[v] + 1 <= len(best):
                continue
            cand = sorted((u for u in adj[v] if core[u] + 1 > len(best)), key=lambda u: (-core[u], u))
            clique = [v]
            for u in cand:
                if all(u in adj[w] for w in clique):
                    clique.append(u)
            if len(clique) > len(best):
                best = clique
        return frozenset(best)


@dataclass
class AffinityRelaxationMaxClique:
    """Dense-subgraph extraction by continuous relaxation (CLIPPER-style).

    Maximises u^T M u over the non-negative unit sphere, where M holds the
    pairwise consistency scores, with a penalty d on inconsistent pairs that
    grows until the support of u is pairwise consistent. The density
    estimate round(u^T M u) picks how many top-ranked ids to keep; the pick
    is then repaired into a valid clique and greedily extended.
    """
    max_outer: int = 40
    max_inner: int = 200
    tol_u: float = 1e-8
    support_tol: float = 1e-6
    d_initial: float = 1e-2
    backtrack: float = 0.5
    name: str = "affinity"

    def relax(self, M: np.ndarray) -> np.ndarray:
        n = M.shape[0]
        C = (M > 0).astype(float)
        np.fill_diagonal(C, 1.0)
        C_bar = 1.0 - C
        u = M.sum(axis=1) + 1e-12
        u = u / np.linalg.norm(u)
        d = 0.0
        for _ in range(self.max_outer):
            Md = M - d * C_bar
            F = float(u @ Md @ u)
            for _ in range(self.max_inner):
                grad = 2.0 * (Md @ u)
                alpha = 1.0
                new_u, new_F = u, F
                while alpha > 1e-10:
                    cand = np.clip(u + alpha * grad, 0.0, None)
                    norm = np.linalg.norm(cand)
                    if norm > 0.0:
                        cand = cand / norm
                        cand_F = float(cand @ Md @ cand)
                        if cand_F >= F:
                            new_u, new_F = cand, cand_F
                            break
                    alpha *= self.backtrack
                delta = float(np.linalg.norm(new_u - u))
                u, F = new_u, new_F
                if delta < self.tol_u:
                    break
            support = u > self.support_tol
            if n == 0 or not np.any(C_bar[np.ix_(support, support)]):
                break
            d = self.d_initial if d == 0.0 else 2.0 * d
        return u

    def select_inliers(self, graph: ConsistencyGraph) -> FrozenSet[int]:
        ids = graph.vertices()
        if not ids:
            return frozenset()
        M = graph.affinity_matrix(ids)
        u = self.relax(M)
        omega = int(round(float(u @ M @ u)))
        omega = min(max(omega, 1), len(ids))
        id_arr = np.asarray(ids)
        rank = [int(id_arr[k]) for k in np.lexsort((id_arr, -u))]
        adj = graph.adjacency()
        clique: List[int] = []
        for v in rank[:omega]:
            if all(v in adj[w] for w in clique):
                clique.append(v)
        for v in rank[omega:]:
            if all(v in adj[w] for w in clique):
                clique.append(v)
        return frozenset(clique)


def make_selector(method=MaxCliqueMethod.HEURISTIC, time_limit: Optional[float] = None) -> InlierSelector:
    """Strategy factory; unknown tokens fall back to the heuristic selector."""
    if not isinstance(method, MaxCliqueMethod):
        method = parse_max_clique_method(method)
    if method is MaxCliqueMethod.EXACT:
        return ExactMaxClique(time_limit=time_limit)
    if method is MaxCliqueMethod.AFFINITY:
        return AffinityRelaxationMaxClique()
    return HeuristicMaxClique()
