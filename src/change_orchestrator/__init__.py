"""Change orchestration: intent resolution, approval gating and phased rollout."""

__version__ = "0.1.0"
