"""Deployment tooling for the domain services.

Migrates each domain's PostgreSQL schema in dependency order.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
