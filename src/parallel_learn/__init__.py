"""Parallel codebase learning with external CLI agents."""

__version__ = "0.1.0"
