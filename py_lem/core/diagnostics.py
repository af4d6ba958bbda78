"""Per-step diagnostics surfaced to external logging."""

from dataclasses import dataclass, field
from typing import Dict, List

from .errors import ErosionConvergenceError


@dataclass
class StepDiagnostics:
    """Counters for one completed time step."""
    step: int
    pit_count: int = 0
    redirected_count: int = 0
    max_elevation_change: float = 0.0
    failures: List[ErosionConvergenceError] = field(default_factory=list)

    @property
    def non_converged_count(self) -> int:
        return len(self.failures)

    def as_dict(self) -> Dict[str, float]:
        return {
            "step": self.step,
            "pit_count": self.pit_count,
            "redirected_count": self.redirected_count,
            "non_converged_count": self.non_converged_count,
            "max_elevation_change": self.max_elevation_change,
        }


def summarize(diagnostics: List[StepDiagnostics]) -> Dict[str, float]:
    """Totals across a run."""
    return {
        "steps": len(diagnostics),
        "pit_events": sum(d.pit_count for d in diagnostics),
        "non_converged": sum(d.non_converged_count for d in diagnostics),
        "last_max_change": diagnostics[-1].max_elevation_change if diagnostics else 0.0,
    }
