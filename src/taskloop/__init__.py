"""Task backlog stores and resilience primitives for automation loops."""

__version__ = "0.1.0"
