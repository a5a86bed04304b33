"""Gatekeeper: gate-based validation of declared code changes."""

__all__ = ["__version__"]

__version__ = "0.1.0"
