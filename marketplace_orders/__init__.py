"""
Order Hub - parent-order aggregation and courier live queue
"""

__version__ = "1.0.0"
