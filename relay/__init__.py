"""relay: a terminal coding assistant with pluggable tools."""

__version__ = "0.1.0"
