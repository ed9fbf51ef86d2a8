"""Subscription billing for the local business directory."""

__version__ = "1.0.0"
