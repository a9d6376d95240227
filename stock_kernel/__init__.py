"""
Stock Kernel

An append-only inventory quantity ledger with:
- Row-atomic stock cell mutation
- Idempotent adjustments and conversions
- Gapless per-cell audit trail
- Transfer lifecycle with optional physical-token binding
"""

__version__ = "0.1.0"
