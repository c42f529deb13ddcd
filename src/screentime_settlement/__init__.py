"""
Screen-Time Settlement

Weekly screen-time commitments backed by monetary penalties: usage ledger,
settlement state machine, late-data reconciliation and weekly pools.
"""

__version__ = "1.0.0"
