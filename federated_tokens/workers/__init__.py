"""Background workers for the token lifecycle service."""

from .token_refresh import TokenRefreshWorker

__all__ = ["TokenRefreshWorker"]
