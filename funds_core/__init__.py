"""
Funds Core

Banking funds-movement core: user and account registry, client transfers,
admin-driven status transitions, check deposits and cards, with Decimal
money math, a hash-chained audit trail and post-commit outbox.
"""

__version__ = "1.0.0"
