"""Core address, rule and firewall logic."""
