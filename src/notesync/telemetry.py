"""Local telemetry for sync cycles and chunked passes.

Appends one JSON line per recorded run and rewrites an aggregated summary
that ``notesync sync status`` reads back.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .models import utcnow


@dataclass
class TelemetryRecorder:
    output_dir: Path
    metrics_file: str = "telemetry.log"
    summary_file: str = "telemetry_summary.json"
    _stats: Dict[str, Dict[str, Dict[str, float]]] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        # Continue the totals of earlier processes sharing this workspace.
        for kind, summary in self.load_summary().items():
            by_outcome = self._stats.setdefault(kind, {})
            for outcome, stats in summary.get("outcomes", {}).items():
                by_outcome[outcome] = {
                    "count": stats["count"],
                    "duration": stats["avg_duration"] * stats["count"],
                    "items": stats["items"],
                }

    def record(
        self,
        kind: str,
        outcome: str,
        duration: float,
        *,
        items: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record one run of ``kind`` (``cycle``, ``verify``, ...) ending in ``outcome``."""
        entry: Dict[str, Any] = {
            "kind": kind,
            "outcome": outcome,
            "duration": duration,
            "timestamp": utcnow().isoformat(),
        }
        if items is not None:
            entry["items"] = items
        if metadata:
            entry["metadata"] = metadata

        with self._lock:
            by_outcome = self._stats.setdefault(kind, {})
            stats = by_outcome.setdefault(outcome, {"count": 0, "duration": 0.0, "items": 0})
            stats["count"] += 1
            stats["duration"] += duration
            if items is not None:
                stats["items"] += items

            path = self.output_dir / self.metrics_file
            with path.open("a", encoding="utf-8") as fp:
                fp.write(json.dumps(entry, default=str) + "\n")

            summary_path = self.output_dir / self.summary_file
            summary_path.write_text(json.dumps(self._build_summary(), indent=2))

    def _build_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {}
        for kind, by_outcome in self._stats.items():
            outcomes = {}
            for outcome, stats in by_outcome.items():
                count = stats["count"]
                outcomes[outcome] = {
                    "count": count,
                    "items": int(stats["items"]),
                    "avg_duration": stats["duration"] / count if count else 0.0,
                }
            summary[kind] = {
                "runs": sum(s["count"] for s in by_outcome.values()),
                "outcomes": outcomes,
            }
        return summary

    def load_summary(self) -> Dict[str, Any]:
        path = self.output_dir / self.summary_file
        if not path.exists():
            return {}
        return json.loads(path.read_text())


__all__ = ["TelemetryRecorder"]
