"""Compound-Guard: verification pipeline for pharmacy compounding jobs."""

__version__ = "0.1.0"
