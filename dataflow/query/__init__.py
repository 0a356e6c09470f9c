"""
Query Layer

Read-only HTTP access to persisted imbalance bars.
"""
