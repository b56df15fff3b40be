"""Module __init__: shared helpers used across the testbed."""
#
# KEY MODULES:
# - **async_helpers.py**: safe task creation, timeouts, retry with backoff
#
