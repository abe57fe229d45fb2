"""StayBook booking lifecycle and availability engine."""

__version__ = "0.1.0"
