"""Local-first desktop activity tracking engine."""

__version__ = "3.0.0"
