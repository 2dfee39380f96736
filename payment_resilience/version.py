"""
Version information for the payment resilience package.
"""

__version__ = "1.0.0"
