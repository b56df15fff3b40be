"""Module __init__: the closed network's DNSSEC-signed namespace."""
#
# KEY MODULES:
# - **zone.py**: zone states, key material, delegation records
# - **server.py**: in-process authoritative and secondary name servers
# - **transport.py**: in-memory and UDP/TCP query transports
# - **verifier.py**: validating resolution from the root trust anchor
# - **bootstrapper.py**: root -> TLD -> leaf chain of trust at runtime
#
