"""
Billing Kernel

Shared foundation for the lab receivables ledger:
- Typed, code-carrying exceptions
- Structured JSON logging with request context
- SQLAlchemy declarative base, engine and money types
- Injectable clock and deterministic hashing
"""

__version__ = "0.1.0"
