"""Adaptive per-key rate limiting and anti-abuse decisions."""

__version__ = "0.1.0"
