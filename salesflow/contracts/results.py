"""
Per-phase result types.

A phase never lets a local failure escape: it returns a PhaseResult whose
status is success, degraded (output written, with a data-quality reason) or
failed (no output written). A run collects them into a RunSummary.
"""

import time
from dataclasses import dataclass, field
from enum import Enum


class PhaseStatus(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class PhaseResult:
    phase: str
    target: str
    status: PhaseStatus
    reason: str | None = None
    rows_in: int = 0
    rows_out: int = 0
    elapsed_seconds: float = 0.0
    details: dict = field(default_factory=dict)

    @classmethod
    def success(cls, phase: str, target: str, **kwargs) -> "PhaseResult":
        return cls(phase=phase, target=target, status=PhaseStatus.SUCCESS, **kwargs)

    @classmethod
    def degraded(cls, phase: str, target: str, reason: str, **kwargs) -> "PhaseResult":
        return cls(phase=phase, target=target, status=PhaseStatus.DEGRADED, reason=reason, **kwargs)

    @classmethod
    def failed(cls, phase: str, target: str, reason: str, **kwargs) -> "PhaseResult":
        return cls(phase=phase, target=target, status=PhaseStatus.FAILED, reason=reason, **kwargs)

    @property
    def ok(self) -> bool:
        """True when output was written (success or degraded)."""
        return self.status != PhaseStatus.FAILED


@dataclass
class RunSummary:
    run_id: str
    started_at: float = field(default_factory=time.monotonic)
    results: list[PhaseResult] = field(default_factory=list)
    cancelled: bool = False
    elapsed_seconds: float = 0.0

    def add(self, result: PhaseResult) -> PhaseResult:
        self.results.append(result)
        return result

    def finish(self) -> "RunSummary":
        self.elapsed_seconds = time.monotonic() - self.started_at
        return self

    def for_phase(self, phase: str) -> list[PhaseResult]:
        return [r for r in self.results if r.phase == phase]

    @property
    def rows_processed(self) -> int:
        return sum(r.rows_out for r in self.results if r.ok)

    @property
    def failed(self) -> list[PhaseResult]:
        return [r for r in self.results if r.status == PhaseStatus.FAILED]

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "cancelled": self.cancelled,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "rows_processed": self.rows_processed,
            "results": [
                {
                    "phase": r.phase,
                    "target": r.target,
                    "status": r.status.value,
                    "reason": r.reason,
                    "rows_in": r.rows_in,
                    "rows_out": r.rows_out,
                    "elapsed_seconds": round(r.elapsed_seconds, 3),
                }
                for r in self.results
            ],
        }
