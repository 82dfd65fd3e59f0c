"""
credit_guard - credit ledger and usage metering for paid image generation.
"""

__version__ = "0.1.0"
