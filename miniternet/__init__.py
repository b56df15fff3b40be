"""
Miniternet: a closed "miniature Internet" for integration testing.

Brings up a private DNSSEC chain (root, TLD, leaf), a CA/OCSP service, a matrix
of TLS target fixtures and the application under test, then drives browser
checks against it and writes a pass/fail report.
"""

__version__ = "0.1.0"
