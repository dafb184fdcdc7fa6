"""
Rate limiting package for the AI gateway.

Holds the fixed-window admission controller that enforces per-scope minute
and day request budgets.
"""

from .fixed_window import FixedWindowAdmissionController

__all__ = ["FixedWindowAdmissionController"]
