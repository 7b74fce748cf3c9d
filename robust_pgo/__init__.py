"""robust_pgo: Outlier-resilient pose-graph optimisation back-end.

This package provides:
- A measurement store for odometry chains and candidate loop closures
- Pairwise consistency checks (PCM, simple and original variants)
- An incrementally maintained consistency graph
- Pluggable max-clique selectors (exact, heuristic, affinity relaxation)
- A graduated non-convexity (GNC-TLS) reweighting loop
- A robust solver orchestrating the above around GTSAM's LM optimizer
- A g2o reader/writer and a CLI entry point (see main.py)

Design intent:
Keep modules small and single-purpose so the outlier-rejection strategy
(e.g. a different clique solver or robust kernel) can be swapped out while
the rest of the pipeline remains stable.
"""
__all__ = [
    "models",
    "geometry",
    "noise",
    "params",
    "store",
    "consistency",
    "consistency_graph",
    "max_clique",
    "gnc",
    "optimizer",
    "solver",
    "loader",
]
__version__ = "0.1.0"
