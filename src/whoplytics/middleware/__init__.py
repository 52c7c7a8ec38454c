"""HTTP middleware for Whoplytics."""
