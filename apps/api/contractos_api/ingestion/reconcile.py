from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class ReconciliationCheck:
    label: str
    declared_total: float
    computed_total: float
    absolute_diff: float
    relative_diff: float
    within_tolerance: bool

    def describe(self) -> str:
        return (
            f"{self.label}: declared {self.declared_total:.2f}, computed {self.computed_total:.2f}, "
            f"discrepancy {self.absolute_diff:.2f} ({self.relative_diff * 100:.1f}%)"
        )


def reconcile_sum(
    label: str,
    declared_total: float,
    items: Iterable[float | None],
    tolerance: float,
) -> ReconciliationCheck:
    """
    Compare the sum of `items` with `declared_total`.

    The relative difference is taken against the declared total. A zero total only
    reconciles with a zero sum. Missing items count as zero. Numbers are never adjusted.
    """
    computed = float(sum(v for v in items if v is not None))
    declared = float(declared_total)
    absolute = abs(computed - declared)
    if declared == 0:
        relative = 0.0 if absolute == 0 else float("inf")
    else:
        relative = absolute / abs(declared)
    return ReconciliationCheck(
        label=label,
        declared_total=declared,
        computed_total=computed,
        absolute_diff=round(absolute, 6),
        relative_diff=relative,
        within_tolerance=relative <= tolerance + 1e-9,
    )
