"""KPI logging helpers (structured JSON events)."""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

logger = logging.getLogger("robust_pgo.kpi")


class KPILogger:
    """Emit structured KPI events for downstream analysis.

    Each event is one JSON object with ``event`` and ``ts`` keys plus the
    event's fields; ``None`` fields are omitted. Events go to the process
    logger at INFO and, when ``log_path`` is given, to a JSONL file.
    """

    def __init__(
        self,
        enabled: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
        log_path: Optional[str] = None,
        emit_to_logger: bool = True,
    ):
        self.enabled = enabled
        self._extra = extra_fields.copy() if extra_fields else {}
        self._emit_to_logger = emit_to_logger
        self._fh = None
        if log_path:
            self._fh = open(log_path, "w", encoding="utf-8")

    def _emit(self, event: str, **fields: Any) -> None:
        if not self.enabled:
            return
        payload = {"event": event, "ts": time.time()}
        payload.update(self._extra)
        payload.update({k: v for k, v in fields.items() if v is not None})
        if self._emit_to_logger:
            logger.info("KPI %s", json.dumps(payload, sort_keys=True))
        if self._fh:
            self._fh.write(json.dumps(payload, sort_keys=True) + "\n")
            self._fh.flush()

    def ingest(self, update_id: int, priors: int, odometry: int, loop_closures: int, new_keys: int) -> None:
        self._emit(
            "ingest",
            update_id=update_id,
            priors=priors,
            odometry=odometry,
            loop_closures=loop_closures,
            new_keys=new_keys,
        )

    def consistency_update(self, update_id: int, nodes: int, edges: int, evaluations: int, duration_s: float) -> None:
        self._emit(
            "consistency_update",
            update_id=update_id,
            nodes=nodes,
            edges=edges,
            evaluations=evaluations,
            duration_s=duration_s,
        )

    def inliers_selected(self, update_id: int, method: str, accepted: int, rejected: int, duration_s: float) -> None:
        self._emit(
            "inliers_selected",
            update_id=update_id,
            method=method,
            accepted=accepted,
            rejected=rejected,
            duration_s=duration_s,
        )

    def gnc_iteration(self, iteration: int, mu: float, max_weight_change: float, **fields: Any) -> None:
        self._emit("gnc_iteration", iteration=iteration, mu=mu, max_weight_change=max_weight_change, **fields)

    def optimization_end(
        self,
        batch_id: int,
        duration_s: float,
        updated_keys: Optional[int] = None,
        **fields: Any,
    ) -> None:
        self._emit(
            "optimization_end",
            batch_id=batch_id,
            duration_s=duration_s,
            updated_keys=updated_keys,
            **fields,
        )

    def close(self) -> None:
        if self._fh:
            try:
                self._fh.close()
            finally:
                self._fh = None
