"""Database models for Whoplytics."""

from .base import Base
from .installation import Installation
from .oauth_state import ConsumedOAuthState

__all__ = [
    "Base",
    "Installation",
    "ConsumedOAuthState",
]
