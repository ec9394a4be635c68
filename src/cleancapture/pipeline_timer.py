# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Capture stage timer for latency tracking and deadline diagnostics.

Created outside the capture deadline so it survives cancellation and can
name the stage that stalled when the overall deadline fires. Each stage
knows which ``ErrorKind`` a stall inside it is reported as.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Literal, TypedDict, get_args

from .errors import ErrorKind

CaptureStage = Literal["session", "navigation", "settle", "suppression", "rasterize"]
CAPTURE_STAGES: tuple[CaptureStage, ...] = get_args(CaptureStage)

_STAGE_HINTS: dict[CaptureStage, str] = {
    "session": "Browser launch is stalling. Check that Chromium can start on this host.",
    "navigation": "Page may be slow to load or keep long-polling connections open.",
    "settle": "Settle delay overran; the event loop may be saturated.",
    "suppression": "Overlay suppression is stalling on a very large DOM.",
    "rasterize": "Screenshot encoding is slow. Try fullPage=false.",
}

_STAGE_ERROR_KINDS: dict[CaptureStage, ErrorKind] = {
    "session": ErrorKind.SESSION_UNAVAILABLE,
    "navigation": ErrorKind.NAVIGATION_FAILED,
}


class StageTiming(TypedDict):
    stage: CaptureStage
    ms: float


class TimeoutReport(TypedDict):
    completed_stages: list[StageTiming]
    timed_out_at: CaptureStage | Literal["unknown"]
    timed_out_stage_ms: float
    total_ms: float
    hint: str
    error_kind: ErrorKind


@dataclass(slots=True)
class StageRecord:
    name: CaptureStage
    start_ns: int
    end_ns: int = 0

    def elapsed_ms(self, now_ns: int | None = None) -> float:
        end = self.end_ns or now_ns or time.monotonic_ns()
        return round((end - self.start_ns) / 1e6, 1)


class PipelineTimer:
    """Track capture stage transitions for latency reporting."""

    __slots__ = ("_stages", "_current", "_start_ns")

    def __init__(self) -> None:
        self._stages: list[StageRecord] = []
        self._current: StageRecord | None = None
        self._start_ns: int = time.monotonic_ns()

    def stage(self, name: CaptureStage) -> None:
        """End previous stage + start new stage."""
        if name not in CAPTURE_STAGES:
            raise ValueError(f"Unknown capture stage '{name}'")
        now = time.monotonic_ns()
        if self._current is not None:
            self._current.end_ns = now
            self._stages.append(self._current)
        self._current = StageRecord(name=name, start_ns=now)

    def finalize(self) -> None:
        """End current stage. Call on success or error."""
        if self._current is not None:
            self._current.end_ns = time.monotonic_ns()
            self._stages.append(self._current)
            self._current = None

    @property
    def current_stage(self) -> CaptureStage | None:
        return self._current.name if self._current else None

    @property
    def total_ms(self) -> float:
        return round((time.monotonic_ns() - self._start_ns) / 1e6, 1)

    def elapsed_per_stage(self) -> dict[CaptureStage, float]:
        """Return {stage: elapsed_ms} for all stages, the running one included."""
        now = time.monotonic_ns()
        result = {s.name: s.elapsed_ms() for s in self._stages}
        if self._current is not None:
            result[self._current.name] = self._current.elapsed_ms(now)
        return result

    def timeout_report(self) -> TimeoutReport:
        """Structured diagnostic for an expired capture deadline."""
        now = time.monotonic_ns()
        current = self._current
        return {
            "completed_stages": [{"stage": s.name, "ms": s.elapsed_ms()} for s in self._stages],
            "timed_out_at": current.name if current else "unknown",
            "timed_out_stage_ms": current.elapsed_ms(now) if current else 0.0,
            "total_ms": round((now - self._start_ns) / 1e6, 1),
            "hint": self.hint_for_stage(current.name) if current else "Timed out before the first stage.",
            "error_kind": self.error_kind_for_stage(current.name) if current else ErrorKind.CAPTURE_FAULT,
        }

    @staticmethod
    def hint_for_stage(stage: str) -> str:
        return _STAGE_HINTS.get(stage, f"Timed out during '{stage}' stage.")

    @staticmethod
    def error_kind_for_stage(stage: str) -> ErrorKind:
        """Failure kind for a deadline that expired inside *stage*."""
        return _STAGE_ERROR_KINDS.get(stage, ErrorKind.CAPTURE_FAULT)
