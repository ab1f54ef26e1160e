"""Rover - sandboxed task execution for coding agents."""

__version__ = "0.1.0"
