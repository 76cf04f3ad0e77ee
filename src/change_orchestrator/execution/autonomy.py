"""Which phase boundaries need a human promotion."""

from __future__ import annotations


def gated_phases(
    mode: str,
    phase_count: int,
    *,
    risk_score: int = 0,
    risk_based_auto_max_score: int = 40,
) -> list[int]:
    if phase_count <= 1:
        return []
    if mode == "approve_all":
        return list(range(1, phase_count))
    if mode == "canary_only":
        return [phase_count - 1]
    if mode == "risk_based":
        if risk_score <= risk_based_auto_max_score:
            return []
        return list(range(1, phase_count))
    # full_auto never blocks; plan_only never reaches execution with state changes
    return []
