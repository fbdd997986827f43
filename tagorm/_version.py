"""Version information for tagorm."""

__version__ = "0.3.0"
