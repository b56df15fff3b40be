"""Module __init__: foundational settings shared by every component."""
#
# PURPOSE:
# Marks the "base" directory as a Python package containing the configuration
# layer that the rest of the testbed depends on.
#
# WHAT'S IN THIS MODULE:
# - config.py: environment-driven configuration, validation, logging setup
#
