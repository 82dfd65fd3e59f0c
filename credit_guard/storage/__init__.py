"""
Storage layer: SQLite key-value store and usage event log.
"""
