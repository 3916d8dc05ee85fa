"""KPI logging helpers for the pose graph backend."""
from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Dict, Optional

logger = logging.getLogger("spg.kpi")


class KPILogger:
    """Emit structured KPI events for downstream analysis.

    Events go to the ``spg.kpi`` logger and/or a JSON-lines file. Emission is
    serialized because events arrive from the foreground thread and from
    constraint-builder workers alike.
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
        self._lock = threading.Lock()
        self._fh = None
        if log_path:
            self._fh = open(log_path, "w", encoding="utf-8")

    def _emit(self, event: str, **fields: Any) -> None:
        if not self.enabled:
            return
        payload = {"event": event, "ts": time.time()}
        payload.update(self._extra)
        payload.update({k: v for k, v in fields.items() if v is not None})
        line = json.dumps(payload, sort_keys=True)
        with self._lock:
            if self._emit_to_logger:
                logger.info("KPI %s", line)
            if self._fh:
                self._fh.write(line + "\n")
                self._fh.flush()

    def scan_insert(self, trajectory_id: int, scan_index: int, stamp: float, **fields: Any) -> None:
        self._emit("scan_insert", trajectory_id=trajectory_id, scan_index=scan_index, stamp=stamp, **fields)

    def optimization_start(self, batch_id: int, factor_count: int, constraint_count: int) -> None:
        self._emit(
            "optimization_start",
            batch_id=batch_id,
            factor_count=factor_count,
            constraint_count=constraint_count,
        )

    def optimization_end(
        self,
        batch_id: int,
        duration_s: float,
        updated_keys: Optional[int] = None,
        *,
        max_translation_delta: Optional[float] = None,
    ) -> None:
        self._emit(
            "optimization_end",
            batch_id=batch_id,
            duration_s=duration_s,
            updated_keys=updated_keys,
            max_translation_delta=max_translation_delta,
        )

    def constraint_batch(self, constraint_count: int, mean_score: Optional[float] = None) -> None:
        self._emit("constraint_batch", constraint_count=constraint_count, mean_score=mean_score)

    def queue_drained(self, replayed_tasks: int, duration_s: float) -> None:
        self._emit("queue_drained", replayed_tasks=replayed_tasks, duration_s=duration_s)

    def close(self) -> None:
        if self._fh:
            try:
                self._fh.close()
            finally:
                self._fh = None
