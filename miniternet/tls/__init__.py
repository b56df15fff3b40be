"""TLS target fixtures: profiles, certificates and their deployment."""
