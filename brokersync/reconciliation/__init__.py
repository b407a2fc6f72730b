"""
Reconciliation module.

Recovers fills from cancelled orders and consolidates operations into net positions.
"""
