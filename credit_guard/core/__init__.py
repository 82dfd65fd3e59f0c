"""
Core modules for credit_guard.

This package contains the credit ledger, pricing, metering gate,
payment reconciliation and usage analytics.
"""
