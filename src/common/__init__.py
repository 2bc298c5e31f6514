"""
Common utilities for auth-session.

Modules:
- auth_api: remote auth service contract and its httpx client
- logs: structlog configuration
"""

__all__ = [
    "auth_api",
    "logs",
]
