"""Listing state synchronization: keeps listing flags, overrides and history consistent."""

__version__ = "0.1.0"
