"""Whoplytics: tenant identity and sessions for a Whop-embedded analytics dashboard."""

__version__ = "0.1.0"
