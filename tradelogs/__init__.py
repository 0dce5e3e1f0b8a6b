"""
Trade-log crawler for the Kyber reserve contracts.

Watches contract event logs, assembles trade, fee-distribution and reserve
registry records, and hands each block window to storage as one unit.
"""

__version__ = "0.4.0"
