"""
Usage collection and billing aggregation engine.
"""

__version__ = "0.1.0"
