"""tobby: terminal IRC client protocol engine."""

__version__ = "0.1.0"
