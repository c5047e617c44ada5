"""
Coinframe - cached coin share card served behind a stampede-safe refresh.
"""

__version__ = "1.0.0"
