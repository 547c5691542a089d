"""Relay tasks between solver backends when one of them gets stuck."""

__version__ = "0.1.0"
