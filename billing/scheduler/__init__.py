"""Renewal scheduler."""

from .renewal import RenewalScheduler, SweepOutcome, SweepReport

__all__ = ["RenewalScheduler", "SweepOutcome", "SweepReport"]
