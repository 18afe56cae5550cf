"""
Core Accounting Engine

Small-business accounting core with a double-entry journal, weighted-average
inventory valuation and a tax-authority invoice lifecycle, using Decimal
money throughout and a hash-chained audit trail.
"""

__version__ = "1.0.0"
