"""Step-up MFA approval service."""

__version__ = "0.1.0"
