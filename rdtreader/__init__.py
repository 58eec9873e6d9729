"""Rapid diagnostic test submission, classification and statistics service."""

__version__ = "0.1.0"
