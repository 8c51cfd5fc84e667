"""Session management for long-running GHCi-based compiler workers."""

__version__ = "0.1.0"
