from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Set, Tuple
import logging

import numpy as np

from .consistency import ConsistencyEvaluator

logger = logging.getLogger("robust_pgo.consistency_graph")


@dataclass
class NodeRecord:
    id: int
    odometry_consistent: bool = False
    odometry_score: float = 0.0
    evaluated: bool = False


class ConsistencyGraph:
    """Undirected graph over loop-closure ids; edges mark pairwise consistency.

    Nodes live in an arena keyed by the stable loop-closure id and edges in an
    adjacency dict ``{id: {neighbor_id: score}}``. Insertion is incremental:
    a new id is checked against the odometry and against every id evaluated
    before it, and existing edges are never recomputed. ``recheck_all`` is the
    explicit full recompute for when the odometry chain is no longer trusted.

    A node that fails the odometry check stays in the graph but is not
    eligible for cliques.
    """

    def __init__(self, evaluator: Optional[ConsistencyEvaluator] = None):
        self._evaluator = evaluator
        self._nodes: Dict[int, NodeRecord] = {}
        self._edges: Dict[int, Dict[int, float]] = {}
        self.evaluations = 0

    @classmethod
    def from_edges(cls,
                   ids: Iterable[int],
                   edges: Iterable[Tuple[int, int]],
                   ineligible: Iterable[int] = (),
                   scores: Optional[Dict[Tuple[int, int], float]] = None) -> "ConsistencyGraph":
        """Build a graph directly, without an evaluator (handy for tests)."""
        graph = cls()
        skip = set(ineligible)
        for i in ids:
            graph._nodes[i] = NodeRecord(id=i, odometry_consistent=i not in skip,
                                         odometry_score=0.0 if i in skip else 1.0, evaluated=True)
            graph._edges[i] = {}
        scores = scores or {}
        for i, j in edges:
            s = scores.get((i, j), scores.get((j, i), 1.0))
            graph._edges[i][j] = s
            graph._edges[j][i] = s
        return graph

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def add_loop_closure(self, lc_id: int) -> None:
        if lc_id in self._nodes:
            return
        self._nodes[lc_id] = NodeRecord(id=lc_id)
        self._edges[lc_id] = {}

    def evaluate_against_existing(self, lc_id: int) -> int:
        """Check ``lc_id`` against odometry and all earlier ids; return edges added."""
        if self._evaluator is None:
            raise RuntimeError("ConsistencyGraph has no evaluator")
        node = self._nodes[lc_id]
        store = self._evaluator.store
        lc = store.loop_closure(lc_id)
        odom = self._evaluator.check_odometry(lc)
        self.evaluations += 1
        node.odometry_consistent = odom.consistent
        node.odometry_score = odom.score
        if not odom.consistent:
            logger.debug("Loop closure %d inconsistent with odometry %s", lc_id, odom.distances)
        added = 0
        for other_id in sorted(self._nodes):
            other = self._nodes[other_id]
            if other_id == lc_id or not other.evaluated:
                continue
            res = self._evaluator.check_pair(store.loop_closure(other_id), lc)
            self.evaluations += 1
            if res.consistent:
                self._edges[lc_id][other_id] = res.score
                self._edges[other_id][lc_id] = res.score
                added += 1
        node.evaluated = True
        return added

    def refresh(self, new_ids: Iterable[int]) -> int:
        added = 0
        for lc_id in sorted(new_ids):
            self.add_loop_closure(lc_id)
            added += self.evaluate_against_existing(lc_id)
        return added

    def recheck(self, ids: Iterable[int]) -> int:
        """Re-evaluate ``ids`` after the odometry between their endpoints changed.

        Their edges are dropped and recomputed; edges between two ids outside
        ``ids`` are kept.
        """
        ids = sorted(i for i in set(ids) if i in self._nodes)
        for lc_id in ids:
            for other_id in list(self._edges[lc_id]):
                self._edges[other_id].pop(lc_id, None)
            self._edges[lc_id] = {}
            self._nodes[lc_id] = NodeRecord(id=lc_id)
        if ids:
            logger.info("Rechecking %d loop closures after an odometry change", len(ids))
        added = 0
        for lc_id in ids:
            added += self.evaluate_against_existing(lc_id)
        return added

    def recheck_all(self) -> int:
        """Drop every judgement and re-evaluate all nodes in id order."""
        ids = sorted(self._nodes)
        self._nodes = {}
        self._edges = {}
        logger.info("Full consistency recheck over %d loop closures", len(ids))
        return self.refresh(ids)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, lc_id: int) -> bool:
        return lc_id in self._nodes

    def ids(self) -> List[int]:
        return sorted(self._nodes)

    def vertices(self) -> List[int]:
        """Ids eligible for cliques (consistent with odometry), ascending."""
        return [i for i in sorted(self._nodes) if self._nodes[i].odometry_consistent]

    def is_eligible(self, lc_id: int) -> bool:
        node = self._nodes.get(lc_id)
        return bool(node and node.odometry_consistent)

    def has_edge(self, i: int, j: int) -> bool:
        return j in self._edges.get(i, {})

    def score(self, i: int, j: int) -> float:
        if i == j:
            return self._nodes[i].odometry_score
        return self._edges.get(i, {}).get(j, 0.0)

    def neighbors(self, lc_id: int) -> Set[int]:
        return set(self._edges.get(lc_id, {}))

    @property
    def edge_count(self) -> int:
        return sum(len(n) for n in self._edges.values()) // 2

    def adjacency(self) -> Dict[int, Set[int]]:
        """Adjacency restricted to eligible vertices."""
        eligible = set(self.vertices())
        return {i: {j for j in self._edges[i] if j in eligible} for i in sorted(eligible)}

    def is_complete(self) -> bool:
        ids = self.ids()
        n = len(ids)
        return len(self.vertices()) == n and self.edge_count == n * (n - 1) // 2

    def is_clique(self, members: Iterable[int]) -> bool:
        members = sorted(members)
        if not all(self.is_eligible(i) for i in members):
            return False
        return all(self.has_edge(a, b) for idx, a in enumerate(members) for b in members[idx + 1:])

    def affinity_matrix(self, ids: Optional[List[int]] = None) -> np.ndarray:
        """Symmetric matrix of consistency scores (diagonal: odometry scores)."""
        ids = self.vertices() if ids is None else list(ids)
        n = len(ids)
        M = np.zeros((n, n), dtype=float)
        for a, i in enumerate(ids):
            M[a, a] = self._nodes[i].odometry_score
            row = self._edges[i]
            for b in range(a + 1, n):
                s = row.get(ids[b], 0.0)
                M[a, b] = s
                M[b, a] = s
        return M

    def snapshot(self) -> "ConsistencyGraph":
        """Detached copy with no evaluator (cheap, for tests and persistence)."""
        copy = ConsistencyGraph()
        copy._nodes = {i: NodeRecord(n.id, n.odometry_consistent, n.odometry_score, n.evaluated)
                       for i, n in self._nodes.items()}
        copy._edges = {i: dict(e) for i, e in self._edges.items()}
        copy.evaluations = self.evaluations
        return copy

    def edges(self) -> FrozenSet[Tuple[int, int]]:
        return frozenset((i, j) for i, row in self._edges.items() for j in row if i < j)
