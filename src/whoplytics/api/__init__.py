"""HTTP API for Whoplytics."""
