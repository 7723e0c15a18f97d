"""
Pure domain layer.

No ORM, no database, no I/O beyond the SystemClock time boundary.
"""

from billing_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = ["Clock", "DeterministicClock", "SystemClock"]
