"""Per-frame loop-closure metrics written to CSV files."""

from __future__ import annotations

import dataclasses
import time
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, TextIO

_HEADER = (
    "id,numInitialCandidates,numFilteredCandidates,numAccFilteredCandidates,"
    "numConsistentCandidates,loopDetected,numMatchedFrames,ransacPoseEstimateSolved,"
    "poseOptimized,matchedKf,computeSuccess,minScore,detectLoopDurationMs,"
    "computeSimDurationMs"
)

_FILES = {
    "log": "log.csv",
    "connected": "connected_frames.csv",
    "initial": "initial_candidates.csv",
    "filtered": "filtered_candidates.csv",
    "acc_filtered": "acc_filtered_candidates.csv",
    "consistent": "consistent_candidates.csv",
    "matched": "matched_frames.csv",
    "ransac": "ransac_solved_frames.csv",
    "params": "params.yaml",
}


def _fmt(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        return format(value, "g")
    return str(value)


def default_log_dir(root=".") -> Path:
    """A fresh log directory under ``root/logs`` named by the local time."""
    return Path(root) / "logs" / time.strftime("%Y%m%d_%H%M%S")


@dataclasses.dataclass
class FrameMetrics:
    """Loop-closure outcome for one keyframe."""

    frame_id: int = 0
    num_initial_candidates: int = 0
    num_filtered_candidates: int = 0
    num_acc_filtered_candidates: int = 0
    num_consistent_candidates: int = 0
    loop_detected: bool = False
    num_matched_frames: int = 0
    ransac_pose_estimate_solved: bool = False
    pose_optimized: bool = False
    matched_kf: int = 0
    compute_success: bool = False
    min_score: float = 0.0
    detect_loop_duration_ms: float = 0.0
    compute_sim_duration_ms: float = 0.0

    def csv_row(self) -> str:
        return ",".join(_fmt(getattr(self, f.name)) for f in dataclasses.fields(self))


class MetricLogger:
    """Writes one row per processed keyframe plus per-stage candidate lists.

    Fill ``current`` between ``start_frame`` and ``log_frame``.
    """

    def __init__(self, log_dir=None) -> None:
        self.log_dir = Path(log_dir) if log_dir is not None else default_log_dir()
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._files: dict[str, TextIO] = {
            key: open(self.log_dir / name, "w", encoding="utf-8", newline="")
            for key, name in _FILES.items()
        }
        self.current = FrameMetrics()
        self._active = False
        self._files["log"].write(_HEADER + "\n")
        self._files["log"].flush()

    def __enter__(self) -> MetricLogger:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def start_frame(self, frame_id: int) -> None:
        if self._active:
            self.log_frame()
        self.current = FrameMetrics(frame_id=frame_id)
        self._active = True

    def log_frame(self) -> None:
        if self._active:
            self._files["log"].write(self.current.csv_row() + "\n")
            self._active = False

    def flush(self) -> None:
        for handle in self._files.values():
            handle.flush()

    def close(self) -> None:
        for handle in self._files.values():
            handle.close()

    def log_params(self, params) -> None:
        """Write a flat parameter set (mapping or dataclass) as YAML."""
        if dataclasses.is_dataclass(params) and not isinstance(params, type):
            params = dataclasses.asdict(params)
        if not isinstance(params, Mapping):
            raise TypeError("params must be a mapping or a dataclass instance")
        handle = self._files["params"]
        for key, value in params.items():
            text = ("true" if value else "false") if isinstance(value, bool) else str(value)
            handle.write(f"{key}: {text}\n")
        handle.flush()

    def _row(self, key: str, values: Iterable[Any]) -> None:
        values = list(values)
        if not values:
            return
        cells = [_fmt(self.current.frame_id), *(_fmt(v) for v in values)]
        self._files[key].write(",".join(cells) + "\n")

    def connected_frames(self, frames) -> None:
        self._row("connected", (kf.frame_id for kf in frames))

    def initial_candidates(self, candidates) -> None:
        self._row("initial", (v for kf in candidates for v in (kf.frame_id, float(kf.loop_score))))

    def filtered_candidates(self, candidates) -> None:
        self._row(
            "filtered",
            (v for c in candidates for v in (c.keyframe.frame_id, float(c.score))),
        )

    def acc_filtered_candidates(self, candidates) -> None:
        self._row("acc_filtered", (kf.frame_id for kf in candidates))

    def consistent_candidates(self, candidates) -> None:
        self._row(
            "consistent", (v for kf in candidates for v in (kf.frame_id, float(kf.loop_score)))
        )

    def matched_frames(self, frames) -> None:
        self._row("matched", (kf.frame_id for kf in frames))

    def ransac_solved_frames(self, frames) -> None:
        self._row("ransac", (kf.frame_id for kf in frames))