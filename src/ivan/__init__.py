"""Ivan: turn natural-language requests into reviewed pull requests."""

__version__ = "0.4.0"
