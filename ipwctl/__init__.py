"""Command line entry points for IPWarden."""
