"""API gateway core: API-key authentication, rate limiting and webhook delivery."""

__version__ = "1.0.0"
